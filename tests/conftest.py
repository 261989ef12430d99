"""Shared fakes for broker, transfer and handshake tests."""

import json
from typing import List

import pytest

from fusionshare.signaling.broker import SignalingBroker
from fusionshare.signaling.rooms import RoomRegistry
from fusionshare.transfer.messages import DataMessageType, decode_message


class FakeConnection:
    """Stands in for a websocket on the broker side."""

    def __init__(self, name: str):
        self.name = name
        self.sent: List[dict] = []
        self.closed = False

    async def send_text(self, text: str):
        if self.closed:
            raise RuntimeError("connection closed")
        self.sent.append(json.loads(text))

    def of_type(self, kind: str) -> List[dict]:
        return [m for m in self.sent if m['type'] == kind]

    def __repr__(self):
        return f"FakeConnection({self.name})"


class SequenceCodes:
    """Code generator replaying a fixed sequence."""

    def __init__(self, *codes: str):
        self.codes = list(codes)
        self.calls = 0

    def __call__(self) -> str:
        code = self.codes[min(self.calls, len(self.codes) - 1)]
        self.calls += 1
        return code


@pytest.fixture
def broker():
    return SignalingBroker(RoomRegistry())


@pytest.fixture
def alice():
    return FakeConnection('alice')


@pytest.fixture
def bob():
    return FakeConnection('bob')


@pytest.fixture
def carol():
    return FakeConnection('carol')


class Wire:
    """Collects frames written by a transfer role."""

    def __init__(self, fail_after=None):
        self.frames = []
        self.fail_after = fail_after

    def __call__(self, frame: str):
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise ConnectionError("channel closed")
        self.frames.append(decode_message(frame))

    def chunks(self):
        return [m for m in self.frames if m.type == DataMessageType.FILE_CHUNK]

    def last(self):
        return self.frames[-1]


def frame(kind: str, **fields) -> str:
    return json.dumps({'type': kind, **fields})
