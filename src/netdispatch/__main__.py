import sys

from netdispatch.cli import main


sys.exit(main())
