import asyncio, inspect

import pytest
from aiortc import RTCSessionDescription
from websockets.asyncio.server import serve

from relay import SignalingRelay


class FakeEmitter:
    def __init__(self):
        self.handlers = {}

    def on(self, event):
        def decorator(fn):
            self.handlers[event] = fn
            return fn
        return decorator

    async def emit(self, event, *args):
        result = self.handlers[event](*args)
        if inspect.isawaitable(result):
            await result


class FakeChannel(FakeEmitter):
    def __init__(self, ready_state='connecting'):
        super().__init__()
        self.readyState = ready_state
        self.sent = []
        self.broken = False

    def send(self, data):
        if self.broken:
            raise ConnectionError('channel broken')
        self.sent.append(data)

    async def open(self):
        self.readyState = 'open'
        await self.emit('open')


class FakePeerConnection(FakeEmitter):
    """Stands in for aiortc.RTCPeerConnection without touching the network."""

    def __init__(self):
        super().__init__()
        self.connectionState = 'new'
        self.localDescription = None
        self.remoteDescription = None
        self.candidates = []
        self.channel = None
        self.closed = False

    def createDataChannel(self, label, ordered=True):
        self.channel = FakeChannel()
        return self.channel

    async def createOffer(self):
        return RTCSessionDescription(sdp='v=0 offer', type='offer')

    async def createAnswer(self):
        return RTCSessionDescription(sdp='v=0 answer', type='answer')

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        if description.sdp == 'garbage':
            raise ValueError('unparseable SDP')
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise AssertionError('candidate applied before remote description')
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = 'closed'

    async def set_state(self, state):
        self.connectionState = state
        await self.emit('connectionstatechange')


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    def wall(self):
        return int(self.now * 1000)


@pytest.fixture
def pc_factory():
    created = []

    def factory():
        pc = FakePeerConnection()
        created.append(pc)
        return pc

    factory.created = created
    return factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def relay_server():
    relay = SignalingRelay()
    async with serve(relay.handle, '127.0.0.1', 0, process_request=relay.process_request) as server:
        port = server.sockets[0].getsockname()[1]
        yield relay, f'ws://127.0.0.1:{port}'


@pytest.fixture
def eventually():
    async def wait(condition, timeout=5.0, interval=0.02):
        deadline = asyncio.get_running_loop().time() + timeout
        while not condition():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError('condition not met in time')
            await asyncio.sleep(interval)
    return wait
