import asyncio, json

import pytest
import requests
from websockets.asyncio.client import connect

from watch_client import http_url


async def recv(ws, timeout=2.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def assert_silent(ws, timeout=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(ws.recv(), timeout)


async def join(ws, room_id, username):
    await ws.send(json.dumps({'type': 'join-room', 'roomId': room_id, 'username': username}))
    state = await recv(ws)
    assert state['type'] == 'room-state'
    return state


async def test_join_announces_to_existing_members(relay_server):
    relay, url = relay_server
    async with connect(url) as alice, connect(url) as bob:
        a_state = await join(alice, 'r1', 'alice')
        assert [p['username'] for p in a_state['participants']] == ['alice']
        assert a_state['currentVideoRef'] is None
        assert a_state['playbackSnapshot'] == {'positionSeconds': 0.0, 'isPlaying': False, 'capturedAt': 0}

        b_state = await join(bob, 'r1', 'bob')
        assert [p['username'] for p in b_state['participants']] == ['alice', 'bob']
        assert b_state['selfId'] != a_state['selfId']

        joined = await recv(alice)
        assert joined == {'type': 'user-joined', 'id': b_state['selfId'], 'username': 'bob'}
        await assert_silent(bob)

        await bob.send(json.dumps({'type': 'leave-room'}))
        left = await recv(alice)
        assert left == {'type': 'user-left', 'id': b_state['selfId'], 'username': 'bob'}
        assert len(relay.registry.get('r1').participants) == 1


async def test_directed_messages_reach_only_their_target(relay_server):
    _, url = relay_server
    async with connect(url) as alice, connect(url) as bob, connect(url) as carol, connect(url) as dave:
        a = (await join(alice, 'r1', 'alice'))['selfId']
        b = (await join(bob, 'r1', 'bob'))['selfId']
        await join(carol, 'r1', 'carol')
        d = (await join(dave, 'r2', 'dave'))['selfId']
        for ws in (alice, alice, bob):
            assert (await recv(ws))['type'] == 'user-joined'

        await bob.send(json.dumps({'type': 'offer', 'target': a, 'sdp': 'v=0 offer'}))
        assert await recv(alice) == {'type': 'offer', 'sdp': 'v=0 offer', 'sender': b}
        await assert_silent(carol)

        candidate = {'candidate': 'candidate:1 1 udp 2130706431 192.0.2.10 50000 typ host',
                     'sdpMid': '0', 'sdpMLineIndex': 0}
        await alice.send(json.dumps({'type': 'ice-candidate', 'target': b, 'candidate': candidate}))
        msg = await recv(bob)
        assert msg['sender'] == a and msg['candidate'] == candidate

        # other rooms are unreachable
        await alice.send(json.dumps({'type': 'answer', 'target': d, 'sdp': 'v=0 answer'}))
        await alice.send(json.dumps({'type': 'answer', 'target': 'nobody', 'sdp': 'v=0 answer'}))
        await assert_silent(dave)
        await assert_silent(bob)
        await assert_silent(carol)


async def test_video_and_player_updates_are_recorded_and_fanned_out(relay_server):
    relay, url = relay_server
    async with connect(url) as alice, connect(url) as bob:
        a = (await join(alice, 'r1', 'alice'))['selfId']
        await join(bob, 'r1', 'bob')
        await recv(alice)

        await alice.send(json.dumps({'type': 'video-change', 'videoRef': 'dQw4w9WgXcQ'}))
        assert await recv(bob) == {'type': 'video-changed', 'videoRef': 'dQw4w9WgXcQ',
                                   'sender': a, 'username': 'alice'}
        await assert_silent(alice)
        assert relay.registry.get('r1').current_video_ref == 'dQw4w9WgXcQ'

        await alice.send(json.dumps({'type': 'player-state-change', 'positionSeconds': 120.0,
                                     'isPlaying': True, 'timestamp': 5000}))
        sync = await recv(bob)
        assert sync['type'] == 'sync-player'
        assert sync['positionSeconds'] == 120.0 and sync['isPlaying'] is True
        assert relay.registry.get('r1').playback.captured_at == 5000

        # stale reports are still forwarded but never overwrite the room snapshot
        await alice.send(json.dumps({'type': 'player-state-change', 'positionSeconds': 3.0,
                                     'isPlaying': False, 'timestamp': 4000}))
        assert (await recv(bob))['positionSeconds'] == 3.0
        assert relay.registry.get('r1').playback.position_seconds == 120.0

        await bob.send(json.dumps({'type': 'seek-to', 'positionSeconds': 42.0}))
        seek = await recv(alice)
        assert seek['type'] == 'seek-to' and seek['positionSeconds'] == 42.0 and seek['username'] == 'bob'

        async with connect(url) as carol:
            state = await join(carol, 'r1', 'carol')
            assert state['currentVideoRef'] == 'dQw4w9WgXcQ'
            assert state['playbackSnapshot']['positionSeconds'] == 120.0


async def test_malformed_and_premature_messages(relay_server):
    relay, url = relay_server
    async with connect(url) as alice:
        await alice.send('not json')
        await alice.send(json.dumps({'type': 'teleport'}))
        await assert_silent(alice)

        await alice.send(json.dumps({'type': 'video-change', 'videoRef': 'dQw4w9WgXcQ'}))
        error = await recv(alice)
        assert error['type'] == 'error'
        assert len(relay.registry) == 0

        # the connection survives all of the above
        await join(alice, 'r1', 'alice')


async def test_out_of_range_numbers_are_discarded(relay_server):
    relay, url = relay_server
    async with connect(url) as alice, connect(url) as bob:
        await join(alice, 'r1', 'alice')
        await join(bob, 'r1', 'bob')
        await recv(alice)

        await alice.send('{"type": "player-state-change", "positionSeconds": 1, '
                         '"isPlaying": true, "timestamp": NaN}')
        await alice.send('{"type": "seek-to", "positionSeconds": %s}' % ('9' * 400))
        await assert_silent(bob)
        assert len(relay.registry.get('r1').participants) == 2

        # still joined and still routed
        await alice.send(json.dumps({'type': 'seek-to', 'positionSeconds': 12.0}))
        assert (await recv(bob))['positionSeconds'] == 12.0


async def test_relay_rejects_unrecognized_video(relay_server):
    relay, url = relay_server
    async with connect(url) as alice, connect(url) as bob:
        await join(alice, 'r1', 'alice')
        await join(bob, 'r1', 'bob')
        await recv(alice)

        await alice.send(json.dumps({'type': 'video-change', 'videoRef': '<script>'}))
        error = await recv(alice)
        assert error == {'type': 'error', 'message': 'Please enter a valid YouTube URL or video ID'}
        await assert_silent(bob)
        assert relay.registry.get('r1').current_video_ref is None

        await alice.send(json.dumps({'type': 'video-change', 'videoRef': 'https://youtu.be/dQw4w9WgXcQ'}))
        assert (await recv(bob))['videoRef'] == 'dQw4w9WgXcQ'


async def test_joining_another_room_leaves_the_first(relay_server):
    relay, url = relay_server
    async with connect(url) as alice, connect(url) as bob:
        await join(alice, 'r1', 'alice')
        b = (await join(bob, 'r1', 'bob'))['selfId']
        await recv(alice)
        await join(bob, 'r2', 'bob')
        assert await recv(alice) == {'type': 'user-left', 'id': b, 'username': 'bob'}
        assert [p.username for p in relay.registry.get('r1').participants] == ['alice']
        assert [p.username for p in relay.registry.get('r2').participants] == ['bob']


async def test_disconnect_is_an_implicit_leave(relay_server, eventually):
    relay, url = relay_server
    base = http_url(url)
    async with connect(url) as alice:
        await join(alice, 'movie night', 'alice')
        async with connect(url) as bob:
            await join(bob, 'movie night', 'bob')
            await recv(alice)

            resp = await asyncio.to_thread(requests.get, f'{base}/rooms/movie%20night', timeout=5)
            assert resp.status_code == 200
            details = resp.json()
            assert details['roomId'] == 'movie night'
            assert [p['username'] for p in details['participants']] == ['alice', 'bob']
            assert 'joinedAt' not in details['participants'][0]

        left = await recv(alice)
        assert left['type'] == 'user-left' and left['username'] == 'bob'

    await eventually(lambda: 'movie night' not in relay.registry)
    resp = await asyncio.to_thread(requests.get, f'{base}/rooms/movie%20night', timeout=5)
    assert resp.status_code == 404
    assert resp.json() == {'error': 'Room not found'}


async def test_health_endpoint(relay_server):
    _, url = relay_server
    base = http_url(url)
    async with connect(url) as alice:
        await join(alice, 'r1', 'alice')
        resp = await asyncio.to_thread(requests.get, f'{base}/health', timeout=5)
    assert resp.status_code == 200
    body = resp.json()
    assert body['status'] == 'ok' and body['rooms'] == 1
    assert 'timestamp' in body

    resp = await asyncio.to_thread(requests.get, f'{base}/elsewhere', timeout=5)
    assert resp.status_code == 404
