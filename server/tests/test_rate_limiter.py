from services.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_rate_limiter_allows_and_bans():
    clock = FakeClock()
    rl = RateLimiter(window=5, max_hits=60, ban=30, clock=clock)
    key = "conn-1"

    # Send max_hits messages quickly
    for _ in range(60):
        assert rl.allow(key) is True

    # Next one should trigger a temporary ban
    assert rl.allow(key) is False
    assert rl.is_banned(key) is True

    # Still banned shortly after
    clock.now += 10
    assert rl.allow(key) is False

    # After the ban, it should clear
    clock.now += 21
    assert rl.allow(key) is True
    assert rl.is_banned(key) is False


def test_rate_limiter_window_slides():
    clock = FakeClock()
    rl = RateLimiter(window=5, max_hits=3, ban=30, clock=clock)

    for _ in range(3):
        assert rl.allow("k")
    clock.now += 6
    for _ in range(3):
        assert rl.allow("k")


def test_forget_clears_ban():
    clock = FakeClock()
    rl = RateLimiter(window=5, max_hits=1, ban=30, clock=clock)
    rl.allow("k")
    assert rl.allow("k") is False
    rl.forget("k")
    assert rl.is_banned("k") is False
    assert rl.allow("k") is True
