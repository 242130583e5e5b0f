from funding_arb.cooldown import is_cooling, latest_action


def test_never_acted_is_not_cooling():
    assert is_cooling(None, 1_000_000, 300) is False


def test_cooling_window_is_half_open():
    last = 1_000_000
    assert is_cooling(last, last, 300) is True
    assert is_cooling(last, last + 299_999, 300) is True
    assert is_cooling(last, last + 300_000, 300) is False


def test_zero_cooldown_never_blocks():
    assert is_cooling(5, 5, 0) is False


def test_latest_action_ignores_missing():
    assert latest_action(None, None) is None
    assert latest_action(10, None, 7) == 10
