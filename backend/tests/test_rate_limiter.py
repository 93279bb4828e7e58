from livequiz.services.rate_limiter import RATE_LIMIT_MESSAGE, SocketRateLimiter


def test_allows_up_to_limit_then_notifies(clock):
    limiter = SocketRateLimiter(clock)
    notices = []
    results = [
        limiter.check_rate_limit('s1', 'submit-answer', 3, notifier=lambda e, p: notices.append((e, p)))
        for _ in range(5)
    ]
    assert results == [True, True, True, False, False]
    assert notices == [
        ('rate-limited', {'event': 'submit-answer', 'message': RATE_LIMIT_MESSAGE}),
        ('rate-limited', {'event': 'submit-answer', 'message': RATE_LIMIT_MESSAGE}),
    ]


def test_window_resets_after_one_second(clock):
    limiter = SocketRateLimiter(clock)
    assert limiter.check_rate_limit('s1', 'chat-message', 1)
    assert not limiter.check_rate_limit('s1', 'chat-message', 1)
    clock.advance(999)
    assert not limiter.check_rate_limit('s1', 'chat-message', 1)
    clock.advance(1)
    assert limiter.check_rate_limit('s1', 'chat-message', 1)


def test_keys_are_independent(clock):
    limiter = SocketRateLimiter(clock)
    assert limiter.check_rate_limit('s1', 'a', 1)
    assert limiter.check_rate_limit('s1', 'b', 1)
    assert limiter.check_rate_limit('s2', 'a', 1)
    assert not limiter.check_rate_limit('s1', 'a', 1)


def test_default_limit_used_when_unspecified(clock):
    limiter = SocketRateLimiter(clock, default_limit=2)
    assert limiter.check_rate_limit('s1', 'x')
    assert limiter.check_rate_limit('s1', 'x')
    assert not limiter.check_rate_limit('s1', 'x')


def test_never_accepts_more_than_max_within_a_window(clock):
    limiter = SocketRateLimiter(clock)
    accepted = []
    for _ in range(300):
        if limiter.check_rate_limit('s1', 'quick-response', 10):
            accepted.append(clock.now_ms())
        clock.advance(37)
    assert len(accepted) > 10
    # an 11th acceptance always lands in a later window
    assert all(accepted[i + 10] - accepted[i] >= 1000 for i in range(len(accepted) - 10))


def test_prune_drops_entries_after_grace(clock):
    limiter = SocketRateLimiter(clock)
    limiter.check_rate_limit('s1', 'a')
    clock.advance(1000 + 5000)
    assert limiter.prune() == 0
    clock.advance(1)
    assert limiter.prune() == 1
    assert limiter.get_stats() == {'trackedKeys': 0}


def test_background_sweep_reschedules(clock):
    limiter = SocketRateLimiter(clock, cleanup_interval_ms=10000)
    limiter.check_rate_limit('s1', 'a')
    limiter.start_cleanup()
    clock.advance(10000)
    assert limiter.get_stats()['trackedKeys'] == 0
    assert 'rate-limit-sweep' in clock.pending_labels()
    limiter.stop_cleanup()
    assert clock.pending_labels() == []


def test_forget_and_clear(clock):
    limiter = SocketRateLimiter(clock)
    limiter.check_rate_limit('s1', 'a')
    limiter.check_rate_limit('s1', 'b')
    limiter.check_rate_limit('s2', 'a')
    limiter.forget('s1')
    assert limiter.get_stats()['trackedKeys'] == 1
    limiter.clear()
    assert limiter.get_stats()['trackedKeys'] == 0
