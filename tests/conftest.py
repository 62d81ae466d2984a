import io
import time

import pytest


class RecordingIO(io.BytesIO):
    """BytesIO that remembers every (position, size) read from it."""

    def __init__(self, data):
        super().__init__(data)
        self.reads = []

    def read(self, size=-1):
        self.reads.append((self.tell(), size))
        return super().read(size)


@pytest.fixture
def recording():
    return RecordingIO


class SlowIO(io.BytesIO):
    """BytesIO whose reads take a while, to widen the gap between seek and read."""

    def read(self, size=-1):
        time.sleep(0.002)
        return super().read(size)


@pytest.fixture
def slow():
    return SlowIO
