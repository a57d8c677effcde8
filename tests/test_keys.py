"""
Unit tests for the Key Directory.
"""

import json
import threading

import httpx
import pytest

from storekit.envelope import encode_segment
from storekit.errors import (
    InvalidKeyEncoding,
    KeyFetchFailed,
    KeyNotFound,
    KeyResolutionFailed,
)
from storekit.keys import (
    HttpKeySetFetcher,
    KeyDirectory,
    KeyMaterial,
    decode_exponent,
    get_key_directory,
    reconstruct,
    set_key_directory,
)

from conftest import APPLE_KID, CountingFetcher


class TestDecodeExponent:
    """Tests for exponent decoding."""

    def test_one_byte(self):
        """[0x03] decodes to 3."""
        assert decode_exponent(encode_segment(bytes([0x03]))) == 3

    def test_three_bytes(self):
        """[0x01, 0x00, 0x01] decodes to 65537."""
        assert decode_exponent(encode_segment(bytes([0x01, 0x00, 0x01]))) == 65537
        assert decode_exponent("AQAB") == 65537

    @pytest.mark.parametrize("raw", [b"", b"\x01\x00", b"\x00\x01\x00\x01", b"\x01" * 8])
    def test_other_lengths_rejected(self, raw):
        """Any other length fails with InvalidKeyEncoding."""
        with pytest.raises(InvalidKeyEncoding):
            decode_exponent(encode_segment(raw))

    def test_bad_base64(self):
        with pytest.raises(InvalidKeyEncoding):
            decode_exponent("A+B/")


class TestReconstruct:
    """Tests for reconstruct()."""

    def test_rsa_key(self, apple_jwk, rsa_key):
        """An RSA entry yields the matching public key."""
        material = reconstruct(apple_jwk)

        assert isinstance(material, KeyMaterial)
        assert material.key_id == APPLE_KID
        assert material.key_type == "RSA"
        assert material.algorithm == "RS256"
        assert material.jwk.has_private is False
        assert json.loads(material.jwk.export_public())["n"] == apple_jwk["n"]

    def test_ec_key(self, ec_public_jwk):
        """An EC P-256 entry yields an EC public key."""
        material = reconstruct(ec_public_jwk)
        assert material.key_type == "EC"
        assert material.accepts("ES256")
        assert not material.accepts("RS256")

    def test_private_members_ignored(self, rsa_key):
        """Private members published by mistake never reach the key material."""
        leaked = json.loads(rsa_key.export_private())
        leaked["kid"] = "leaked"
        material = reconstruct(leaked)
        assert material.jwk.has_private is False

    def test_missing_kid(self, apple_jwk):
        del apple_jwk["kid"]
        with pytest.raises(InvalidKeyEncoding):
            reconstruct(apple_jwk)

    def test_unsupported_kty(self):
        with pytest.raises(InvalidKeyEncoding) as excinfo:
            reconstruct({"kid": "k1", "kty": "oct", "k": "c2VjcmV0"})
        assert excinfo.value.key_id == "k1"

    def test_bad_exponent_length(self, apple_jwk):
        """A 2-byte exponent is rejected."""
        apple_jwk["e"] = encode_segment(b"\x01\x00")
        with pytest.raises(InvalidKeyEncoding) as excinfo:
            reconstruct(apple_jwk)
        assert excinfo.value.key_id == APPLE_KID

    def test_bad_modulus(self, apple_jwk):
        apple_jwk["n"] = "not base64!"
        with pytest.raises(InvalidKeyEncoding):
            reconstruct(apple_jwk)

    def test_unsupported_curve(self):
        with pytest.raises(InvalidKeyEncoding):
            reconstruct({"kid": "k1", "kty": "EC", "crv": "P-384", "x": "AA", "y": "AA"})

    def test_point_not_on_curve(self, ec_public_jwk):
        ec_public_jwk["y"] = ec_public_jwk["x"]
        with pytest.raises(InvalidKeyEncoding):
            reconstruct(ec_public_jwk)

    def test_alg_outside_family(self, apple_jwk):
        apple_jwk["alg"] = "ES256"
        with pytest.raises(InvalidKeyEncoding):
            reconstruct(apple_jwk)


class TestKeyMaterial:
    """Tests for algorithm acceptance."""

    def test_rsa_family(self, apple_jwk):
        del apple_jwk["alg"]
        material = reconstruct(apple_jwk)
        assert material.accepts("RS256")
        assert material.accepts("RS512")
        assert not material.accepts("ES256")
        assert not material.accepts("HS256")
        assert not material.accepts(None)

    def test_published_alg_pins_algorithm(self, apple_jwk):
        material = reconstruct(apple_jwk)
        assert material.accepts("RS256")
        assert not material.accepts("RS384")


class TestKeyDirectoryLookup:
    """Tests for KeyDirectory.get()."""

    def test_miss_fetches_then_hits_cache(self, directory, fetcher):
        """The first lookup fetches; later lookups are served from cache."""
        first = directory.get(APPLE_KID)
        second = directory.get(APPLE_KID)

        assert first is second
        assert fetcher.calls == 1
        assert APPLE_KID in directory
        assert len(directory) == 1

    def test_unknown_kid_after_fetch(self, directory, fetcher):
        """A kid absent from the fetched set raises KeyNotFound."""
        with pytest.raises(KeyNotFound) as excinfo:
            directory.get("ZZ99")
        assert excinfo.value.key_id == "ZZ99"
        assert fetcher.calls == 1

    def test_key_not_found_is_resolution_failure(self, directory):
        with pytest.raises(KeyResolutionFailed):
            directory.get("ZZ99")

    def test_empty_kid(self, directory, fetcher):
        with pytest.raises(KeyNotFound):
            directory.get("")
        assert fetcher.calls == 0

    def test_fetch_populates_all_keys(self, jwks_document, other_rsa_key):
        """One fetch loads every published key."""
        second = json.loads(other_rsa_key.export_public())
        second["kid"] = "CD34"
        jwks_document["keys"].append(second)
        fetcher = CountingFetcher(jwks_document)
        directory = KeyDirectory(fetcher)

        directory.get(APPLE_KID)
        directory.get("CD34")

        assert fetcher.calls == 1
        assert sorted(directory.key_ids) == [APPLE_KID, "CD34"]

    def test_invalid_entries_skipped(self, jwks_document):
        """Unusable entries are skipped, the rest stays usable."""
        jwks_document["keys"].append({"kid": "bad", "kty": "RSA", "n": "AQAB", "e": "AQA"})
        jwks_document["keys"].append("not an object")
        directory = KeyDirectory(CountingFetcher(jwks_document))

        assert directory.get(APPLE_KID).key_id == APPLE_KID
        assert "bad" not in directory
        assert directory.stats["keys_skipped"] == 2


class TestKeyDirectoryFetchFailures:
    """Tests for fetch failure handling."""

    def test_fetcher_exception_wrapped(self):
        directory = KeyDirectory(CountingFetcher(error=ConnectionError("down")))
        with pytest.raises(KeyFetchFailed) as excinfo:
            directory.get(APPLE_KID)
        assert isinstance(excinfo.value.cause, ConnectionError)

    def test_fetch_failed_passes_through(self):
        original = KeyFetchFailed("HTTP 503")
        directory = KeyDirectory(CountingFetcher(error=original))
        with pytest.raises(KeyFetchFailed) as excinfo:
            directory.get(APPLE_KID)
        assert excinfo.value is original

    @pytest.mark.parametrize("document", [None, [], {"keys": "nope"}, {"other": []}])
    def test_malformed_document(self, document):
        directory = KeyDirectory(CountingFetcher(document))
        with pytest.raises(KeyFetchFailed):
            directory.get(APPLE_KID)

    def test_no_automatic_retry(self):
        fetcher = CountingFetcher(error=ConnectionError("down"))
        directory = KeyDirectory(fetcher)
        with pytest.raises(KeyFetchFailed):
            directory.get(APPLE_KID)
        assert fetcher.calls == 1
        assert directory.stats["fetch_failures"] == 1


class TestKeyDirectoryRotation:
    """Tests for invalidation and refresh."""

    def test_invalidate_forces_refetch(self, directory, fetcher):
        directory.get(APPLE_KID)
        assert directory.invalidate(APPLE_KID) is True
        assert APPLE_KID not in directory

        directory.get(APPLE_KID)
        assert fetcher.calls == 2

    def test_invalidate_unknown(self, directory):
        assert directory.invalidate("nope") is False

    def test_refresh_all_replaces_set(self, directory, fetcher, other_rsa_key):
        """refresh_all() drops keys that are no longer published."""
        directory.get(APPLE_KID)

        rotated = json.loads(other_rsa_key.export_public())
        rotated["kid"] = "NEW1"
        fetcher.document = {"keys": [rotated]}

        assert directory.refresh_all() == 1
        assert directory.key_ids == ["NEW1"]
        with pytest.raises(KeyNotFound):
            directory.get(APPLE_KID)

    def test_new_key_picked_up_on_miss(self, fetcher, other_rsa_key):
        """A key published after the first fetch is found once the refetch interval passed."""
        now = [1000.0]
        directory = KeyDirectory(fetcher, min_refetch_interval=30, clock=lambda: now[0])
        directory.get(APPLE_KID)

        rotated = json.loads(other_rsa_key.export_public())
        rotated["kid"] = "NEW1"
        fetcher.document = {"keys": fetcher.document["keys"] + [rotated]}

        now[0] += 31
        assert directory.get("NEW1").key_id == "NEW1"
        assert fetcher.calls == 2

    def test_clear(self, directory, fetcher):
        directory.get(APPLE_KID)
        directory.clear()
        assert len(directory) == 0
        assert directory.fetched_at is None

    def test_register_without_fetch(self, apple_jwk):
        fetcher = CountingFetcher({"keys": []})
        directory = KeyDirectory(fetcher)
        directory.register(reconstruct(apple_jwk))

        assert directory.get(APPLE_KID).key_id == APPLE_KID
        assert fetcher.calls == 0

    def test_max_age_marks_set_stale(self, fetcher):
        now = [1000.0]
        directory = KeyDirectory(fetcher, max_age=60, clock=lambda: now[0])

        directory.get(APPLE_KID)
        now[0] += 30
        directory.get(APPLE_KID)
        assert fetcher.calls == 1

        now[0] += 31
        directory.get(APPLE_KID)
        assert fetcher.calls == 2

    def test_no_expiry_by_default(self, fetcher):
        now = [0.0]
        directory = KeyDirectory(fetcher, clock=lambda: now[0])
        directory.get(APPLE_KID)
        now[0] += 10 ** 9
        directory.get(APPLE_KID)
        assert fetcher.calls == 1


class TestKeyDirectoryRefetchInterval:
    """Tests for the minimum interval between miss-driven fetches."""

    @staticmethod
    def _directory(fetcher, now):
        return KeyDirectory(fetcher, min_refetch_interval=30, clock=lambda: now[0])

    def test_repeated_unknown_kid_fetches_once(self, fetcher):
        """Consecutive misses inside the interval do not fetch again."""
        now = [1000.0]
        directory = self._directory(fetcher, now)

        for _ in range(5):
            with pytest.raises(KeyNotFound):
                directory.get("ZZ99")
            now[0] += 1

        assert fetcher.calls == 1
        assert directory.stats["refetches_suppressed"] == 4

    def test_miss_after_interval_fetches(self, fetcher):
        now = [1000.0]
        directory = self._directory(fetcher, now)
        with pytest.raises(KeyNotFound):
            directory.get("ZZ99")

        now[0] += 30
        with pytest.raises(KeyNotFound):
            directory.get("ZZ99")
        assert fetcher.calls == 2

    def test_refresh_all_ignores_interval(self, fetcher):
        now = [1000.0]
        directory = self._directory(fetcher, now)
        directory.get(APPLE_KID)

        directory.refresh_all()
        directory.refresh_all()
        assert fetcher.calls == 3

    def test_invalidate_allows_immediate_refetch(self, fetcher):
        now = [1000.0]
        directory = self._directory(fetcher, now)
        directory.get(APPLE_KID)

        directory.invalidate(APPLE_KID)
        assert directory.get(APPLE_KID).key_id == APPLE_KID
        assert fetcher.calls == 2

    def test_stale_set_refetched_inside_interval(self, fetcher):
        now = [1000.0]
        directory = KeyDirectory(fetcher, max_age=10, min_refetch_interval=30, clock=lambda: now[0])
        directory.get(APPLE_KID)

        now[0] += 11
        directory.get(APPLE_KID)
        assert fetcher.calls == 2

    def test_failed_fetch_not_counted(self):
        """A failed fetch does not start the interval."""
        fetcher = CountingFetcher(error=ConnectionError("down"))
        directory = KeyDirectory(fetcher, min_refetch_interval=30)
        for _ in range(2):
            with pytest.raises(KeyFetchFailed):
                directory.get(APPLE_KID)
        assert fetcher.calls == 2


class TestKeyDirectoryConcurrency:
    """Tests for concurrent access."""

    @staticmethod
    def _race(directory, kid, workers=16):
        barrier = threading.Barrier(workers)
        results, errors = [], []

        def worker():
            barrier.wait()
            try:
                results.append(directory.get(kid))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        return results, errors

    def test_concurrent_misses_fetch_once(self, jwks_document):
        """Concurrent lookups on an empty cache trigger exactly one fetch."""
        fetcher = CountingFetcher(jwks_document, delay=0.2)
        directory = KeyDirectory(fetcher)

        results, errors = self._race(directory, APPLE_KID)

        assert errors == []
        assert len(results) == 16
        assert fetcher.calls == 1
        assert all(r is results[0] for r in results)

    def test_concurrent_unknown_kid_fetches_once(self, jwks_document):
        """Waiters re-check after another caller's fetch instead of refetching."""
        fetcher = CountingFetcher(jwks_document, delay=0.2)
        directory = KeyDirectory(fetcher)

        results, errors = self._race(directory, "ZZ99")

        assert results == []
        assert len(errors) == 16
        assert all(isinstance(e, KeyNotFound) for e in errors)
        assert fetcher.calls == 1

    def test_cached_reads_do_not_wait_for_fetch(self, jwks_document, apple_jwk):
        """A cache hit returns while another caller holds the fetch lock."""
        started = threading.Event()
        release = threading.Event()

        def slow_fetch():
            started.set()
            release.wait(timeout=5)
            return jwks_document

        directory = KeyDirectory(slow_fetch)
        directory.register(reconstruct(apple_jwk))

        refresher = threading.Thread(target=directory.refresh_all)
        refresher.start()
        assert started.wait(timeout=5)

        try:
            assert directory.get(APPLE_KID).key_id == APPLE_KID
        finally:
            release.set()
            refresher.join(timeout=5)


class TestHttpKeySetFetcher:
    """Tests for the httpx based fetcher."""

    URL = "https://keys.example.com/auth/keys"

    def _fetcher(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return HttpKeySetFetcher(url=self.URL, client=client)

    def test_fetch_success(self, jwks_document):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=jwks_document)

        document = self._fetcher(handler)()

        assert document == jwks_document
        assert str(seen[0].url) == self.URL
        assert seen[0].method == "GET"

    def test_non_200(self):
        fetch = self._fetcher(lambda request: httpx.Response(503))
        with pytest.raises(KeyFetchFailed, match="503"):
            fetch()

    def test_malformed_json(self):
        fetch = self._fetcher(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(KeyFetchFailed):
            fetch()

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(KeyFetchFailed) as excinfo:
            self._fetcher(handler)()
        assert isinstance(excinfo.value.cause, httpx.ConnectError)

    def test_directory_over_http(self, jwks_document):
        directory = KeyDirectory(
            self._fetcher(lambda request: httpx.Response(200, json=jwks_document))
        )
        assert directory.get(APPLE_KID).key_type == "RSA"


class TestDefaultDirectory:
    """Tests for the process-wide directory."""

    def test_get_and_set(self, directory):
        previous = set_key_directory(directory)
        try:
            assert get_key_directory() is directory
        finally:
            set_key_directory(previous)

    def test_lazy_creation(self):
        previous = set_key_directory(None)
        try:
            created = get_key_directory()
            assert isinstance(created, KeyDirectory)
            assert get_key_directory() is created
        finally:
            set_key_directory(previous)
