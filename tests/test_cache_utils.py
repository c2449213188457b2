"""Key-value store tests: local TTL semantics, atomic update, Redis wrapper and fallback."""
import json
import threading
from unittest.mock import MagicMock, patch

import pytest
import redis

from cache_utils import (
    DELETE,
    KEEP,
    ExpirySweeper,
    KeyValueStoreError,
    LocalKeyValueStore,
    RedisKeyValueStore,
    get_kv_store,
)
from tests.conftest import FakeClock


class TestLocalKeyValueStore:

    def test_set_get_and_lazy_expiry(self):
        clock = FakeClock()
        store = LocalKeyValueStore(default_ttl=10, clock=clock)
        store.set('a', {'x': 1})
        assert store.get('a') == {'x': 1}

        clock.advance(10)
        assert store.get('a') is None

    def test_values_are_copies(self):
        store = LocalKeyValueStore()
        value = {'items': [1]}
        store.set('a', value)
        value['items'].append(2)
        fetched = store.get('a')
        fetched['items'].append(3)
        assert store.get('a') == {'items': [1]}

    def test_update_keep_delete_and_write(self):
        store = LocalKeyValueStore()
        assert store.update('k', lambda v: (KEEP, v)) is None

        assert store.update('k', lambda v: (5, 'written')) == 'written'
        assert store.get('k') == 5

        assert store.update('k', lambda v: (DELETE, v)) == 5
        assert store.get('k') is None

    def test_update_is_atomic_under_threads(self):
        store = LocalKeyValueStore()
        store.set('counter', 0)

        def bump():
            for _ in range(200):
                store.update('counter', lambda v: (v + 1, None))

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get('counter') == 1600

    def test_list_operations(self):
        store = LocalKeyValueStore()
        assert store.rpush('q', [{'n': 1}, {'n': 2}]) == 2
        assert store.llen('q') == 2
        assert store.lpop('q') == {'n': 1}
        assert store.lpop('q') == {'n': 2}
        assert store.lpop('q') is None
        assert store.llen('q') == 0

    def test_lpush_puts_values_back_at_head(self):
        store = LocalKeyValueStore()
        store.rpush('q', [{'n': 3}])
        assert store.lpush('q', [{'n': 1}, {'n': 2}]) == 3
        assert [store.lpop('q') for _ in range(3)] == [{'n': 1}, {'n': 2}, {'n': 3}]

    def test_cleanup_removes_only_expired(self):
        clock = FakeClock()
        store = LocalKeyValueStore(default_ttl=10, clock=clock)
        store.set('short', 1, ttl=5)
        store.set('long', 2, ttl=50)
        clock.advance(6)

        assert store.cleanup() == 1
        assert store.get('long') == 2
        assert store.get_stats()['size'] == 1


class TestRedisKeyValueStore:

    def test_values_round_trip_as_json(self):
        client = MagicMock()
        store = RedisKeyValueStore(client, default_ttl=30)
        store.set('run:1', {'level': 2})
        client.set.assert_called_once_with('quiz:run:1', json.dumps({'level': 2}), px=30_000)

        client.get.return_value = json.dumps({'level': 2})
        assert store.get('run:1') == {'level': 2}

    def test_update_uses_transaction(self):
        client = MagicMock()
        pipe = MagicMock()
        pipe.get.return_value = json.dumps({'used': False})

        def run_transaction(func, *keys, value_from_callable=False):
            assert keys == ('quiz:challenge:n',)
            assert value_from_callable
            return func(pipe)

        client.transaction.side_effect = run_transaction
        store = RedisKeyValueStore(client)

        result = store.update('challenge:n', lambda v: (dict(v, used=True), 'ok'), ttl=60)

        assert result == 'ok'
        pipe.multi.assert_called_once()
        pipe.set.assert_called_once_with('quiz:challenge:n', json.dumps({'used': True}), px=60_000)

    def test_errors_are_wrapped(self):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError('down')
        store = RedisKeyValueStore(client)
        with pytest.raises(KeyValueStoreError):
            store.get('x')


class TestFactory:

    def test_no_url_means_local(self):
        assert get_kv_store('').backend == 'local'

    def test_unreachable_redis_falls_back_to_local(self):
        client = MagicMock()
        client.ping.side_effect = redis.ConnectionError('refused')
        with patch('cache_utils.redis.Redis.from_url', return_value=client):
            store = get_kv_store('redis://localhost:6379/0')
        assert store.backend == 'local'

    def test_reachable_redis(self):
        client = MagicMock()
        with patch('cache_utils.redis.Redis.from_url', return_value=client):
            store = get_kv_store('redis://localhost:6379/0')
        assert store.backend == 'redis'


class TestExpirySweeper:

    def test_sweep_calls_cleanup(self):
        store = MagicMock()
        store.cleanup.return_value = 3
        assert ExpirySweeper(store, interval=60).sweep() == 3

    def test_sweep_survives_store_errors(self):
        store = MagicMock()
        store.cleanup.side_effect = KeyValueStoreError('down')
        assert ExpirySweeper(store, interval=60).sweep() == 0
