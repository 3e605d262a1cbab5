import json
from unittest.mock import MagicMock

import redis

import cache
from conftest import AS_OF


def test_cache_key_uses_view_params_and_date():
    assert cache.cache_key("price-history", AS_OF, "Milk", 30) == "signals:price-history:milk:30:2024-06-01"
    assert cache.cache_key("buy-now", AS_OF) == "signals:buy-now:2024-06-01"


def test_disabled_cache_always_computes():
    client = MagicMock()
    compute = MagicMock(return_value=[1, 2])

    assert cache.remember("k", compute, ttl=0, client=client) == [1, 2]
    client.get.assert_not_called()
    client.set.assert_not_called()


def test_miss_computes_and_stores():
    client = MagicMock()
    client.get.return_value = None
    compute = MagicMock(return_value={"rows": [1]})

    assert cache.remember("k", compute, ttl=60, client=client) == {"rows": [1]}
    client.set.assert_called_once_with("k", json.dumps({"rows": [1]}), ex=60)


def test_hit_skips_compute():
    client = MagicMock()
    client.get.return_value = json.dumps({"rows": [1]}).encode()
    compute = MagicMock()

    assert cache.remember("k", compute, ttl=60, client=client) == {"rows": [1]}
    compute.assert_not_called()


def test_redis_down_falls_back_to_compute():
    client = MagicMock()
    client.get.side_effect = redis.ConnectionError("refused")
    compute = MagicMock(return_value=[])

    assert cache.remember("k", compute, ttl=60, client=client) == []
    compute.assert_called_once()
    client.set.assert_not_called()


def test_failed_write_still_returns_payload():
    client = MagicMock()
    client.get.return_value = None
    client.set.side_effect = redis.ConnectionError("refused")

    assert cache.remember("k", lambda: [3], ttl=60, client=client) == [3]
