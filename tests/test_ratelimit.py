import pytest
from starlette.requests import Request

from errors import TooManyRequests
from ratelimit import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def request_from(host):
    return Request({"type": "http", "method": "POST", "path": "/", "headers": [], "client": (host, 5000)})


def test_blocks_after_limit_and_reports_retry_after():
    clock = FakeClock()
    limiter = RateLimiter(2, 60, "Slow down", clock=clock)
    limiter(request_from("10.0.0.1"))
    clock.now += 10
    limiter(request_from("10.0.0.1"))

    with pytest.raises(TooManyRequests) as exc:
        limiter(request_from("10.0.0.1"))
    assert exc.value.detail == "Slow down"
    assert exc.value.headers == {"Retry-After": "50"}


def test_counts_each_address_separately():
    limiter = RateLimiter(1, 60, "Slow down", clock=FakeClock())
    limiter(request_from("10.0.0.1"))
    limiter(request_from("10.0.0.2"))
    with pytest.raises(TooManyRequests):
        limiter(request_from("10.0.0.1"))


def test_window_expiry_resets_counter():
    clock = FakeClock()
    limiter = RateLimiter(1, 60, "Slow down", clock=clock)
    limiter(request_from("10.0.0.1"))
    clock.now += 60
    limiter(request_from("10.0.0.1"))


def test_reset_clears_counters():
    limiter = RateLimiter(1, 60, "Slow down", clock=FakeClock())
    limiter(request_from("10.0.0.1"))
    limiter.reset()
    limiter(request_from("10.0.0.1"))


def test_expired_windows_are_swept():
    clock = FakeClock()
    limiter = RateLimiter(3, 60, "Slow down", clock=clock)
    for i in range(500):
        limiter(request_from(f"10.0.{i // 256}.{i % 256}"))
    assert limiter.tracked == 500

    clock.now += 61
    limiter(request_from("10.9.9.9"))
    assert limiter.tracked == 1


def test_live_windows_survive_a_sweep():
    clock = FakeClock()
    limiter = RateLimiter(1, 60, "Slow down", clock=clock)
    clock.now += 30
    limiter(request_from("10.0.0.1"))
    clock.now += 40
    limiter(request_from("10.0.0.2"))
    assert limiter.tracked == 2
    with pytest.raises(TooManyRequests):
        limiter(request_from("10.0.0.1"))


def forwarded_request(host, forwarded_for):
    headers = [(b"x-forwarded-for", forwarded_for.encode())]
    return Request({"type": "http", "method": "POST", "path": "/", "headers": headers, "client": (host, 5000)})


def test_forwarded_for_ignored_by_default():
    limiter = RateLimiter(1, 60, "Slow down", clock=FakeClock())
    limiter(forwarded_request("172.16.0.1", "203.0.113.5"))
    with pytest.raises(TooManyRequests):
        limiter(forwarded_request("172.16.0.1", "203.0.113.6"))


def test_forwarded_for_keys_clients_behind_trusted_proxy():
    limiter = RateLimiter(1, 60, "Slow down", clock=FakeClock(), trust_forwarded=True)
    limiter(forwarded_request("172.16.0.1", "203.0.113.5, 172.16.0.1"))
    limiter(forwarded_request("172.16.0.1", "203.0.113.6"))
    with pytest.raises(TooManyRequests):
        limiter(forwarded_request("172.16.0.1", "203.0.113.5"))
