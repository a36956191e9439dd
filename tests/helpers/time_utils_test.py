from datetime import timezone
from random import Random

from tests.helpers.requests import buy
from tests.helpers.time_utils import TimeGenerator, day
from tests.constants import BTC, KRAKEN


def test_time_generator_increases_with_seed() -> None:
    rng = Random(42)
    gen = TimeGenerator(_rng=rng)

    ts1 = gen()
    ts2 = gen()
    ts3 = gen()

    assert ts1 < ts2 < ts3
    gaps = [(ts2 - ts1).total_seconds(), (ts3 - ts2).total_seconds()]
    for gap in gaps:
        assert 5 <= gap <= 60

    # Deterministic given the same seed
    gen_again = TimeGenerator(_rng=Random(42))
    ts1_b, ts2_b, ts3_b = gen_again(), gen_again(), gen_again()
    gaps_b = [(ts2_b - ts1_b).total_seconds(), (ts3_b - ts2_b).total_seconds()]
    assert gaps == gaps_b


def test_request_builders_use_shared_generator_by_default() -> None:
    first = buy(KRAKEN, BTC, "1", "100")
    second = buy(KRAKEN, BTC, "1", "100")

    assert first.timestamp < second.timestamp
    assert first.timestamp.tzinfo == timezone.utc


def test_request_builders_respect_explicit_timestamp() -> None:
    request = buy(KRAKEN, BTC, "1", "100", timestamp=day(3))

    assert request.timestamp == day(3)
