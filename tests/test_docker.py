import base64
import hashlib
import json

import pytest

from composeapps.docker import (
    HashedDigest,
    HttpResponse,
    RegistryClient,
    RegistryError,
    Uri,
)

HASH = hashlib.sha256(b"app content").hexdigest()
OTHER_HASH = hashlib.sha256(b"other content").hexdigest()
AUTH_URL = "https://ota-lite.foundries.io:8443/hub-creds/"


class FakeRegistry:
    def __init__(self, base_url="hub.foundries.io"):
        self.base_url = base_url
        self.manifests = {}
        self.blobs = {}
        self.requested = []
        self.header_sets = []
        self.creds = b'{"Secret":"secret","Username":"test-user"}'
        self.token_body = b'{"token":"token"}'

    def factory(self, headers):
        self.header_sets.append(list(headers))
        return self

    def get(self, url, maxsize=None):
        self.requested.append(url)
        if self.base_url + "/token-auth/" in url:
            return HttpResponse(self.token_body, 200)
        if self.base_url + "/v2/" in url:
            digest = url.rsplit("/", 1)[1]
            return HttpResponse(self.manifests.get(digest, b""), 200)
        if url.endswith("/hub-creds/"):
            return HttpResponse(self.creds, 200)
        return HttpResponse(b"", 401)

    def download(self, url, write_cb):
        data = self.blobs.get(url.rsplit("/", 1)[1], b"")
        if write_cb(data) != len(data):
            return HttpResponse(b"", 200, "aborted")
        return HttpResponse(b"", 200)

    def add_manifest(self, manifest):
        body = json.dumps(manifest).encode()
        digest = "sha256:" + hashlib.sha256(body).hexdigest()
        self.manifests[digest] = body
        return f"{self.base_url}/factory/app-01@{digest}"

    def add_blob(self, data):
        digest = "sha256:" + hashlib.sha256(data).hexdigest()
        self.blobs[digest] = data
        return digest


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def client(registry):
    return RegistryClient("https://ota-lite.foundries.io:8443/", registry, registry.factory)


def test_hashed_digest_parts():
    digest = HashedDigest("sha256:" + HASH)
    assert digest.hash == HASH
    assert digest.short_hash == HASH[:7]
    assert digest.digest == "sha256:" + HASH
    assert str(digest) == "sha256:" + HASH


def test_hashed_digest_is_lowercased():
    digest = HashedDigest("SHA256:" + HASH.upper())
    assert digest == HashedDigest("sha256:" + HASH)
    assert digest.hash == HASH


def test_hashed_digest_rejects_other_type():
    with pytest.raises(ValueError, match="Unsupported hash type"):
        HashedDigest("md5:" + HASH)


def test_hashed_digest_rejects_wrong_size():
    with pytest.raises(ValueError, match="Invalid hash size"):
        HashedDigest("sha256:" + HASH[:-1])


def test_uri_parse():
    uri = Uri.parse("hub.foundries.io/factory/app-01@sha256:" + HASH)
    assert uri.app == "app-01"
    assert uri.factory == "factory"
    assert uri.repo == "factory/app-01"
    assert uri.registry_hostname == "hub.foundries.io"
    assert uri.digest.hash == HASH


def test_uri_parse_with_port():
    uri = Uri.parse("localhost:8080/test-factory/app-02@sha256:" + HASH)
    assert uri.registry_hostname == "localhost:8080"
    assert uri.repo == "test-factory/app-02"


@pytest.mark.parametrize(
    "text, message",
    [
        ("hub.foundries.io/factory/app-01", "'@' not found"),
        ("app-01@sha256:" + HASH, "app name not found"),
        ("factory/app-01@sha256:" + HASH, "factory name not found"),
    ],
)
def test_uri_parse_errors(text, message):
    with pytest.raises(ValueError, match=message):
        Uri.parse(text)


def test_uri_with_digest_keeps_location():
    uri = Uri.parse("hub.foundries.io/factory/app-01@sha256:" + HASH)
    other = uri.with_digest("sha256:" + OTHER_HASH)
    assert other.digest.hash == OTHER_HASH
    assert (other.app, other.factory, other.repo, other.registry_hostname) == (
        uri.app,
        uri.factory,
        uri.repo,
        uri.registry_hostname,
    )
    assert uri.with_digest(HashedDigest("sha256:" + HASH)) == uri


def test_http_response():
    resp = HttpResponse(b'{"a": [1, 2]}', 200)
    assert resp.is_ok
    assert resp.json() == {"a": [1, 2]}
    assert not HttpResponse(b"", 404).is_ok
    assert not HttpResponse(b"", 200, "broken").is_ok


def test_get_app_manifest(registry, client):
    manifest = {"annotations": {"compose-app": "v1"}}
    uri = Uri.parse(registry.add_manifest(manifest))
    assert client.get_app_manifest(uri, "application/json") == manifest
    assert AUTH_URL in registry.requested
    assert any("scope=repository:factory/app-01:pull" in url for url in registry.requested)


def test_auth_headers(registry, client):
    uri = Uri.parse(registry.add_manifest({"x": 1}))
    client.get_app_manifest(uri, "application/json")
    basic = next(h[0] for h in registry.header_sets if h[0].startswith("authorization: basic "))
    encoded = basic[len("authorization: basic "):]
    assert base64.b64decode(encoded).decode() == "test-user:secret"
    assert ["authorization: bearer token", "accept:application/json"] in registry.header_sets


def test_default_auth_endpoint_when_treehub_empty(registry):
    client = RegistryClient("", registry, registry.factory)
    uri = Uri.parse(registry.add_manifest({"x": 1}))
    client.get_app_manifest(uri, "application/json")
    assert RegistryClient.DEF_AUTH_CREDS_ENDPOINT in registry.requested


def test_auth_endpoint_deduced_from_treehub(registry):
    client = RegistryClient("https://gateway.example.com/treehub", registry, registry.factory)
    uri = Uri.parse(registry.add_manifest({"x": 1}))
    client.get_app_manifest(uri, "application/json")
    assert "https://gateway.example.com/hub-creds/" in registry.requested


def test_manifest_hash_mismatch(registry, client):
    registry.add_manifest({"x": 1})
    uri = Uri.parse("hub.foundries.io/factory/app-01@sha256:" + OTHER_HASH)
    with pytest.raises(RegistryError, match="do not match"):
        client.get_app_manifest(uri, "application/json")


def test_invalid_credentials(registry, client):
    registry.creds = b"{}"
    uri = Uri.parse(registry.add_manifest({"x": 1}))
    with pytest.raises(RegistryError, match="invalid Docker Registry credentials"):
        client.get_app_manifest(uri, "application/json")


def test_invalid_token(registry, client):
    registry.token_body = b"{}"
    uri = Uri.parse(registry.add_manifest({"x": 1}))
    with pytest.raises(RegistryError, match="invalid token"):
        client.get_app_manifest(uri, "application/json")


def test_download_blob(registry, client, tmp_path):
    data = b"archive bytes" * 100
    digest = registry.add_blob(data)
    uri = Uri.parse("hub.foundries.io/factory/app-01@sha256:" + HASH).with_digest(digest)
    target = tmp_path / "blob.tgz"
    client.download_blob(uri, target, len(data))
    assert target.read_bytes() == data


def test_download_blob_too_large(registry, client, tmp_path):
    data = b"archive bytes"
    digest = registry.add_blob(data)
    uri = Uri.parse("hub.foundries.io/factory/app-01@" + digest)
    with pytest.raises(RegistryError, match="Failed to download App blob"):
        client.download_blob(uri, tmp_path / "blob.tgz", len(data) - 1)


def test_download_blob_too_small_removes_file(registry, client, tmp_path):
    data = b"archive bytes"
    digest = registry.add_blob(data)
    uri = Uri.parse("hub.foundries.io/factory/app-01@" + digest)
    target = tmp_path / "blob.tgz"
    with pytest.raises(RegistryError, match="Size of downloaded App blob"):
        client.download_blob(uri, target, len(data) + 1)
    assert not target.exists()


def test_download_blob_hash_mismatch_removes_file(registry, client, tmp_path):
    data = b"archive bytes"
    registry.blobs["sha256:" + OTHER_HASH] = data
    uri = Uri.parse("hub.foundries.io/factory/app-01@sha256:" + OTHER_HASH)
    target = tmp_path / "blob.tgz"
    with pytest.raises(RegistryError, match="Hash of downloaded App blob"):
        client.download_blob(uri, target, len(data))
    assert not target.exists()