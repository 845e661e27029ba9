import pytest

from netmap.fields import extract_config
from netmap.packet import PACKET_SOURCE
from netmap.options import MapOptions


@pytest.fixture
def fields():
    return extract_config(PACKET_SOURCE).fields


@pytest.fixture
def options():
    return MapOptions(ephemeral_port_threshold=1024, fade_after_ms=1500, idle_after_ms=5000)
