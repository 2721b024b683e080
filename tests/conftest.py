import threading

import pytest

from netdispatch.config import EndpointConfig
from netdispatch.endpoint import Endpoint


@pytest.fixture
def serve():
    """Start endpoints on 127.0.0.1 with a free port; stopped after the test"""
    running = []

    def start(registry, **config_kwargs):
        config = EndpointConfig(host="127.0.0.1", port=0, **config_kwargs)
        endpoint = Endpoint(registry, config)
        endpoint.bind()
        thread = threading.Thread(target=endpoint.serve_forever, daemon=True)
        thread.start()
        running.append((endpoint, thread))
        return endpoint

    yield start

    for endpoint, thread in running:
        endpoint.close()
        thread.join(timeout=5)
