#!/usr/bin/env python3
"""syncwatch headless participant.

Modes:
  1. Join a room and drive a headless player from stdin:
     python3 watch_bot.py --room r1 --name alice

  2. Two headless participants on an in-process relay (demo/test):
     python3 watch_bot.py --demo

  3. Inspect a room on a running relay:
     python3 watch_bot.py --lookup r1
"""
import asyncio, argparse, json, sys

from websockets.asyncio.server import serve

import constants
from logging_config import setup_logging
from relay import SignalingRelay
from video_ref import InvalidVideoReference
from watch_client import WatchClient, lookup_room


HELP = 'Commands: load <url|id> | play | pause | seek <seconds> | chat <message> | time | who | quit'


def fmt_time(seconds: float) -> str:
    mins, secs = divmod(int(seconds), 60)
    return f'{mins}:{secs:02d}'


async def print_events(client: WatchClient):
    while True:
        event = await client.receive()
        if event.type == 'chat':
            print(f'[{event.username}] {event.text}')
        elif event.type == 'status':
            print(f'[status] {event.text}')
        elif event.type == 'error':
            print(f'[error] {event.text}')
        else:
            print(f'[*] {event.text}')


async def command(client: WatchClient, line: str) -> bool:
    """Run one stdin command. Returns False on quit."""
    parts = line.split()
    cmd = parts[0].lower()
    if cmd in ('quit', 'exit'):
        return False
    if cmd == 'load' and len(parts) >= 2:
        try:
            await client.change_video(parts[1])
        except InvalidVideoReference as e:
            print(f'[error] {e.user_message}')
    elif cmd == 'play':
        await client.play()
    elif cmd == 'pause':
        await client.pause()
    elif cmd == 'seek' and len(parts) >= 2:
        try:
            await client.seek(float(parts[1]))
        except ValueError:
            print('seek expects seconds, e.g. seek 120')
    elif cmd == 'chat' and len(parts) >= 2:
        msg = client.send_chat(line[len('chat'):].strip())
        print(f'[{msg.username}] {msg.message}')
    elif cmd == 'time':
        state = await client.player.state()
        playing = 'playing' if state.is_playing else 'paused'
        print(f'{state.video_ref or "-"} {fmt_time(state.position_seconds)} ({playing})')
    elif cmd == 'who':
        names = ', '.join(client.participants.values()) or 'nobody else'
        print(f'In room {client.room_id}: {names}; direct links: {len(client.peers.open_peers())}')
    else:
        print(HELP)
    return True


async def join_mode(server_url: str, room: str, name: str, video: str = None):
    client = WatchClient(room, name, server_url=server_url)
    run_task = asyncio.create_task(client.run())
    events_task = asyncio.create_task(print_events(client))
    try:
        await client.wait_joined()
        if video:
            await command(client, f'load {video}')
        print(HELP)
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line and not await command(client, line):
                break
    except asyncio.TimeoutError:
        print(f'Could not join room {room} on {server_url}')
    finally:
        await client.close()
        events_task.cancel()
        await asyncio.gather(run_task, events_task, return_exceptions=True)


async def demo():
    """Two headless participants converge on one video through a local relay."""
    relay = SignalingRelay()
    async with serve(relay.handle, 'localhost', 0, process_request=relay.process_request) as server:
        port = server.sockets[0].getsockname()[1]
        url = f'ws://localhost:{port}'
        print(f'[demo] Relay on {url}')

        alice = WatchClient('demo', 'alice', server_url=url, ice_servers=[])
        bob = WatchClient('demo', 'bob', server_url=url, ice_servers=[])
        tasks = [asyncio.create_task(alice.run())]
        await alice.wait_joined()
        await alice.change_video('https://www.youtube.com/watch?v=dQw4w9WgXcQ')
        await alice.seek(120)
        await asyncio.sleep(constants.REPORT_INTERVAL)  # let the play report through the rate limit
        await alice.play()

        tasks.append(asyncio.create_task(bob.run()))
        await bob.wait_joined()
        for _ in range(20):
            await asyncio.sleep(0.5)
            if alice.peers.open_peers() and bob.peers.open_peers():
                break
        a, b = await alice.player.state(), await bob.player.state()
        print(f'[demo] alice: {a.video_ref} {a.position_seconds:.1f}s playing={a.is_playing}')
        print(f'[demo] bob:   {b.video_ref} {b.position_seconds:.1f}s playing={b.is_playing}')
        print(f'[demo] direct links: alice={alice.peers.open_peers()} bob={bob.peers.open_peers()}')

        alice.send_chat('hey bob, are you there?')
        try:
            event = await bob.receive(timeout=5)
            while event.type != 'chat':
                event = await bob.receive(timeout=5)
            print(f'[demo] bob got chat: {event.username}: {event.text}')
        except asyncio.TimeoutError:
            print('[demo] no direct link, chat not delivered')

        room = relay.registry.get('demo')
        print(f'[demo] relay sees: {[p.username for p in room.participants]}, video={room.current_video_ref}')
        await alice.close()
        await bob.close()
        await asyncio.gather(*tasks, return_exceptions=True)
    print('[demo] Done.')


def main():
    p = argparse.ArgumentParser()
    p.add_argument('--demo', action='store_true', help='Two headless participants on a local relay')
    p.add_argument('--lookup', metavar='ROOM', help='Print a room as the relay sees it')
    p.add_argument('--room', help='Room to join')
    p.add_argument('--name', default='anon', help='Display name')
    p.add_argument('--video', help='Video link or id to load after joining')
    p.add_argument('--server', default=constants.RELAY_URL, help='Relay URL (ws://...)')
    args = p.parse_args()
    setup_logging(log_level=constants.LOG_LEVEL, log_file=constants.LOG_FILE)

    if args.demo:
        asyncio.run(demo())
    elif args.lookup:
        room = lookup_room(args.server, args.lookup)
        if room is None:
            print(f'Room {args.lookup} does not exist')
            sys.exit(1)
        print(json.dumps(room, indent=2))
    elif args.room:
        try:
            asyncio.run(join_mode(args.server, args.room, args.name, args.video))
        except KeyboardInterrupt:
            pass
    else:
        print('Usage: watch_bot.py --room ROOM [--name NAME] | --demo | --lookup ROOM')
        print('  --room:   join a room with a headless player')
        print('  --demo:   two headless participants sync up (tests everything)')
        print('  --lookup: print room participants and playback state')


if __name__ == '__main__':
    main()
