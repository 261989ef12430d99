"""In-memory stand-ins for aiortc peer connections and data channels."""

import asyncio

from aiortc import RTCSessionDescription

from fusionshare.errors import TransportError
from fusionshare.signaling.messages import ControlMessage, make_message


class FakeEmitter:

    def __init__(self):
        self._listeners = {}

    def on(self, event, f):
        self._listeners.setdefault(event, []).append(f)

    def emit(self, event, *args):
        for f in list(self._listeners.get(event, [])):
            f(*args)


class FakeChannel(FakeEmitter):

    def __init__(self, label='fusion-share', ready_state='connecting'):
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.sent = []
        self.peer = None

    def send(self, data):
        if self.readyState != 'open':
            raise ConnectionError("channel not open")
        self.sent.append(data)
        if self.peer is not None:
            # Delivered on a later loop iteration, like a real transport
            asyncio.get_running_loop().call_soon(self.peer.emit, 'message', data)

    def open(self):
        self.readyState = 'open'
        self.emit('open')

    def close(self):
        self.readyState = 'closed'
        self.emit('close')


class FakePeerConnection(FakeEmitter):

    def __init__(self):
        super().__init__()
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = 'new'
        self.added = []
        self.channels = []
        self.closed = False

    def createDataChannel(self, label):
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return RTCSessionDescription(sdp='v=0 offer', type='offer')

    async def createAnswer(self):
        return RTCSessionDescription(sdp='v=0 answer', type='answer')

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self.added.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = 'closed'


class PeerConnectionFactory:
    """Records every peer connection it builds."""

    def __init__(self):
        self.created = []

    def __call__(self):
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc

    @property
    def last(self):
        return self.created[-1]


def host_candidate(port: int, mid: str = '0') -> dict:
    return {
        'candidate': f'candidate:1 1 udp 2122260223 192.0.2.10 {port} typ host',
        'sdpMid': mid,
        'sdpMLineIndex': 0,
    }


class BrokerLink:
    """Endpoint-side control client wired straight into a SignalingBroker."""

    def __init__(self, broker):
        self.broker = broker
        self.on_message = None
        self.on_close = None
        self.connected = False
        self.inbox = asyncio.Queue()
        self._reader = None

    async def connect(self):
        if self.connected:
            return
        self.connected = True
        self.broker.connect(self)
        self._reader = asyncio.ensure_future(self._read_loop())

    async def send(self, kind, **fields):
        if not self.connected:
            raise TransportError("Not connected to broker")
        await self.broker.handle_text(self, make_message(kind, **fields).to_json())

    async def send_text(self, text):
        # Broker -> endpoint
        self.inbox.put_nowait(text)

    async def close(self):
        if not self.connected:
            return
        self.connected = False
        self._reader.cancel()
        await self.broker.disconnect(self)

    async def drop(self):
        """Simulate the broker connection dying under the endpoint."""
        await self.close()
        await self.on_close(TransportError("connection lost"))

    async def _read_loop(self):
        while True:
            text = await self.inbox.get()
            await self.on_message(ControlMessage.from_json(text))
