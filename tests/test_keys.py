from __future__ import annotations

from watchparty.realtime.keys import PUSH_CHARS, PushKeyGenerator


def test_keys_are_twenty_characters_from_the_ordered_alphabet() -> None:
    key = PushKeyGenerator(clock=lambda: 1_700_000_000.0)()

    assert len(key) == 20
    assert set(key) <= set(PUSH_CHARS)
    assert list(PUSH_CHARS) == sorted(PUSH_CHARS)


def test_keys_within_one_millisecond_are_strictly_increasing() -> None:
    generate = PushKeyGenerator(clock=lambda: 1_700_000_000.0)

    keys = [generate() for _ in range(50)]

    assert keys == sorted(keys)
    assert len(set(keys)) == len(keys)


def test_keys_follow_the_clock_and_survive_a_step_back() -> None:
    now = [1_700_000_000.0]
    generate = PushKeyGenerator(clock=lambda: now[0])

    first = generate()
    now[0] += 0.01
    second = generate()
    now[0] -= 10
    third = generate()

    assert first < second < third
    assert first[:8] < second[:8]
