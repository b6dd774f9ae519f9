import random
from collections import Counter

from rooms import Participant, PlaybackSnapshot, RoomRegistry


def participant(pid, name=None):
    return Participant(id=pid, username=name or pid, joined_at=1)


def test_join_creates_room_and_returns_snapshot():
    registry = RoomRegistry()
    snap = registry.join('r1', participant('a', 'alice'))
    assert 'r1' in registry
    assert [p.username for p in snap.participants] == ['alice']
    assert snap.current_video_ref is None
    assert snap.playback == PlaybackSnapshot()

    snap = registry.join('r1', participant('b', 'bob'))
    assert [p.id for p in snap.participants] == ['a', 'b']
    assert [p.id for p in snap.others('b')] == ['a']


def test_same_username_is_a_separate_participant():
    registry = RoomRegistry()
    registry.join('r1', participant('a', 'alice'))
    snap = registry.join('r1', participant('a2', 'alice'))
    assert len(snap.participants) == 2


def test_rejoin_with_same_connection_is_not_duplicated():
    registry = RoomRegistry()
    registry.join('r1', participant('a'))
    snap = registry.join('r1', participant('a'))
    assert len(snap.participants) == 1


def test_last_leave_deletes_room():
    registry = RoomRegistry()
    registry.join('r1', participant('a'))
    registry.join('r1', participant('b'))
    assert registry.leave('r1', 'a') == 1
    assert registry.leave('r1', 'b') == 0
    assert 'r1' not in registry
    assert registry.get('r1') is None
    assert registry.leave('r1', 'b') == 0


def test_join_leave_sequences_match_membership():
    rng = random.Random(7)
    for _ in range(50):
        registry = RoomRegistry()
        joined, left = Counter(), Counter()
        present = []
        for step in range(rng.randint(1, 30)):
            if present and rng.random() < 0.4:
                pid = present.pop(rng.randrange(len(present)))
                registry.leave('r', pid)
                left[pid] += 1
            else:
                pid = f'c{step}'
                registry.join('r', participant(pid))
                present.append(pid)
                joined[pid] += 1
        expected = joined - left
        snap = registry.get('r')
        if not expected:
            assert snap is None
        else:
            assert Counter(p.id for p in snap.participants) == expected


def test_stale_playback_never_overwrites():
    registry = RoomRegistry()
    registry.join('r1', participant('a'))
    newer = PlaybackSnapshot(120.0, True, captured_at=2000)
    assert registry.update_playback('r1', newer)
    assert not registry.update_playback('r1', PlaybackSnapshot(10.0, False, captured_at=1999))
    assert registry.get('r1').playback == newer
    # same timestamp replaces
    again = PlaybackSnapshot(121.0, False, captured_at=2000)
    assert registry.update_playback('r1', again)
    assert registry.get('r1').playback == again


def test_updates_on_missing_room_are_noops():
    registry = RoomRegistry()
    assert not registry.update_video('nope', 'dQw4w9WgXcQ')
    assert not registry.update_playback('nope', PlaybackSnapshot(1.0, True, 1))
    assert len(registry) == 0


def test_rooms_are_independent():
    registry = RoomRegistry()
    registry.join('r1', participant('a'))
    registry.join('r2', participant('b'))
    registry.update_video('r1', 'dQw4w9WgXcQ')
    registry.leave('r2', 'b')
    assert registry.get('r1').current_video_ref == 'dQw4w9WgXcQ'
    assert 'r2' not in registry
    assert registry.find('r1', 'a').id == 'a'
    assert registry.find('r1', 'b') is None
