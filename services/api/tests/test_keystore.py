from concurrent.futures import ThreadPoolExecutor

import pytest

from piiseal.errors import KeyNotFoundError
from piiseal.utils import crypto
from piiseal.utils.keystore import KeyStore


def test_generate_and_get_image_key(key_store):
    key = key_store.generate_image_key()
    assert key_store.get_image_key(key.id) is key
    assert key_store.stats()["image_key_count"] == 1
    assert key_store.stats()["image_key_bytes"] == 32


def test_missing_image_key(key_store):
    with pytest.raises(KeyNotFoundError):
        key_store.get_image_key("00000000-0000-0000-0000-000000000000")


def test_remove_image_key_wipes_it(key_store):
    key = key_store.generate_image_key()
    key_store.remove_image_key(key.id)
    assert key.raw_buffer_is_zero()
    with pytest.raises(KeyNotFoundError):
        key_store.get_image_key(key.id)


def test_clear_all_keys_zeroes_every_buffer(key_store, recipient_pair):
    keys = [key_store.generate_image_key() for _ in range(5)]
    key_store.store_key_pair(recipient_pair)

    key_store.clear_all_keys()

    assert all(k.is_wiped and k.raw_buffer_is_zero() for k in keys)
    assert key_store.stats() == {"image_key_count": 0, "key_pair_count": 0, "image_key_bytes": 0}
    with pytest.raises(KeyNotFoundError):
        key_store.get_image_key(keys[0].id)
    with pytest.raises(KeyNotFoundError):
        key_store.get_key_pair(recipient_pair.tag)


def test_key_pairs(key_store, recipient_pair):
    key_store.store_key_pair(recipient_pair)
    assert key_store.get_key_pair("bob") is recipient_pair

    imported = key_store.import_public_key("carol", recipient_pair.public_pem())
    assert not imported.has_private_key
    assert key_store.get_key_pair("carol").public_pem() == recipient_pair.public_pem()

    with pytest.raises(KeyNotFoundError):
        key_store.get_key_pair("dave")


def test_generate_key_pair_uses_configured_size():
    store = KeyStore(rsa_key_size=2048)
    pair = store.generate_key_pair("alice")
    assert pair.private_key.key_size == 2048
    assert store.get_key_pair("alice") is pair
    store.clear_all_keys()


def test_concurrent_access(key_store):
    def work(_):
        key = key_store.generate_image_key()
        assert key_store.get_image_key(key.id) is key
        return key.id

    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(work, range(200)))

    assert len(set(ids)) == 200
    assert key_store.stats()["image_key_count"] == 200


def test_unwrapped_key_can_be_stored(key_store, recipient_pair):
    key = crypto.generate_image_key()
    unwrapped = crypto.unwrap_image_key(crypto.wrap_image_key(key, recipient_pair.public_key), recipient_pair.private_key)
    key_store.store_image_key(unwrapped)
    assert key_store.get_image_key(key.id).key_bytes == key.key_bytes
