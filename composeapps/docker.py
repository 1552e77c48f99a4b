"""Docker registry access: app URIs, digests and a registry client."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence, Union

import requests

log = logging.getLogger(__name__)

_TIMEOUT = 60


class RegistryError(RuntimeError):
    """Raised when talking to the registry or validating its data fails."""


class HashedDigest:
    """A ``sha256:<hex>`` content digest."""

    TYPE = "sha256:"

    def __init__(self, hash_digest: str):
        digest = hash_digest.lower()
        if not digest.startswith(self.TYPE):
            raise ValueError(f"Unsupported hash type: {hash_digest}")
        hash_ = digest[len(self.TYPE):]
        if len(hash_) != 64:
            raise ValueError(f"Invalid hash size: {hash_digest}")
        self._digest = digest
        self._hash = hash_
        self._short_hash = hash_[:7]

    @property
    def digest(self) -> str:
        return self._digest

    @property
    def hash(self) -> str:
        return self._hash

    @property
    def short_hash(self) -> str:
        return self._short_hash

    def __str__(self) -> str:
        return self._digest

    def __repr__(self) -> str:
        return f"HashedDigest({self._digest!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HashedDigest):
            return NotImplemented
        return self._digest == other._digest

    def __hash__(self) -> int:
        return hash(self._digest)


@dataclass(frozen=True)
class Uri:
    """An app URI of the form ``<registry>/<factory>/<app>@sha256:<hex>``."""

    digest: HashedDigest
    app: str
    factory: str
    repo: str
    registry_hostname: str

    @staticmethod
    def parse(uri: str) -> "Uri":
        split_pos = uri.find("@")
        if split_pos == -1:
            raise ValueError(f"Invalid App URI: '@' not found in {uri}")

        app_name_pos = uri.rfind("/", 0, split_pos)
        if app_name_pos == -1:
            raise ValueError(f"Invalid App URI: the app name not found in {uri}")

        app = uri[app_name_pos + 1:split_pos]
        digest = uri[split_pos + 1:]
        log.debug("%s: App digest: %s", app, digest)

        factory_name_pos = uri.rfind("/", 0, app_name_pos)
        if factory_name_pos == -1:
            raise ValueError(f"Invalid App URI; the app factory name not found in {uri}")

        factory = uri[factory_name_pos + 1:app_name_pos]
        repo = uri[factory_name_pos + 1:split_pos]
        registry_hostname = uri[:factory_name_pos]
        log.debug("%s: Factory: %s, Repo: %s, Registry: %s", app, factory, repo, registry_hostname)

        return Uri(HashedDigest(digest), app, factory, repo, registry_hostname)

    def with_digest(self, digest: Union[HashedDigest, str]) -> "Uri":
        """Return the same repository location pointing at another digest."""
        if not isinstance(digest, HashedDigest):
            digest = HashedDigest(digest)
        return Uri(digest, self.app, self.factory, self.repo, self.registry_hostname)


@dataclass
class HttpResponse:
    """The outcome of an HTTP request."""

    body: bytes
    status_code: int
    error: str = ""

    @property
    def is_ok(self) -> bool:
        return not self.error and 200 <= self.status_code < 300

    @property
    def status_str(self) -> str:
        status = f"HTTP {self.status_code}"
        return f"{status}: {self.error}" if self.error else status

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


class HttpClient(Protocol):
    def get(self, url: str, maxsize: Optional[int] = None) -> HttpResponse: ...

    def download(self, url: str, write_cb: Callable[[bytes], int]) -> HttpResponse: ...


def _parse_headers(headers: Iterable[str]) -> dict:
    parsed = {}
    for header in headers:
        name, _, value = header.partition(":")
        parsed[name.strip()] = value.strip()
    return parsed


class RequestsHttpClient:
    """HTTP client sending a fixed set of ``name: value`` headers."""

    def __init__(self, headers: Optional[Sequence[str]] = None):
        self._headers = _parse_headers(headers or ())

    def get(self, url: str, maxsize: Optional[int] = None) -> HttpResponse:
        try:
            with requests.get(url, headers=self._headers, stream=True, timeout=_TIMEOUT) as resp:
                body = bytearray()
                for chunk in resp.iter_content(chunk_size=8192):
                    body += chunk
                    if maxsize is not None and len(body) > maxsize:
                        return HttpResponse(bytes(body), resp.status_code, "response exceeds the maximum size")
                return HttpResponse(bytes(body), resp.status_code)
        except requests.RequestException as exc:
            return HttpResponse(b"", 0, str(exc))

    def download(self, url: str, write_cb: Callable[[bytes], int]) -> HttpResponse:
        try:
            with requests.get(url, headers=self._headers, stream=True, timeout=_TIMEOUT) as resp:
                if not resp.ok:
                    return HttpResponse(b"", resp.status_code)
                for chunk in resp.iter_content(chunk_size=65536):
                    if write_cb(chunk) != len(chunk):
                        return HttpResponse(b"", resp.status_code, "write callback aborted the transfer")
                return HttpResponse(b"", resp.status_code)
        except requests.RequestException as exc:
            return HttpResponse(b"", 0, str(exc))


def default_http_client_factory(headers: Optional[Sequence[str]]) -> RequestsHttpClient:
    return RequestsHttpClient(headers)


def _json_object(resp: HttpResponse) -> dict:
    try:
        value = resp.json()
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def _as_string(value: Any) -> str:
    return value if isinstance(value, str) else ""


class RegistryClient:
    """Downloads app manifests and blobs from a Docker registry."""

    DEF_AUTH_CREDS_ENDPOINT = "https://ota-lite.foundries.io:8443/hub-creds/"
    AUTH_MATERIAL_MAX_SIZE = 1024
    MANIFEST_MAX_SIZE = 2048
    MAX_BLOB_SIZE = 2**31 - 1

    MANIFEST_ENDPOINT = "/manifests/"
    BLOB_ENDPOINT = "/blobs/"
    SUPPORTED_REGISTRY_VERSION = "/v2/"

    def __init__(
        self,
        treehub_endpoint: str,
        ota_lite_client: HttpClient,
        http_client_factory: Callable[[Sequence[str]], HttpClient] = default_http_client_factory,
    ):
        self._ota_lite_client = ota_lite_client
        self._http_client_factory = http_client_factory
        # The registry auth endpoint is assumed to share its base URL with treehub.
        self._creds_endpoint = ""
        if treehub_endpoint:
            endpoint_pos = treehub_endpoint.rfind("/")
            if endpoint_pos != -1:
                self._creds_endpoint = treehub_endpoint[:endpoint_pos] + "/hub-creds/"
        if not self._creds_endpoint:
            self._creds_endpoint = self.DEF_AUTH_CREDS_ENDPOINT

    def get_app_manifest(self, uri: Uri, format: str) -> Any:
        manifest_url = self._manifest_url(uri)
        log.debug("Downloading App manifest: %s", manifest_url)

        client = self._http_client_factory([self._bearer_auth_header(uri), "accept:" + format])
        resp = client.get(manifest_url, self.MANIFEST_MAX_SIZE)
        if not resp.is_ok:
            raise RegistryError(f"Failed to download App manifest: {resp.status_str}")

        if len(resp.body) > self.MANIFEST_MAX_SIZE:
            raise RegistryError(
                "Size of received App manifest exceeds the maximum allowed: "
                f"{len(resp.body)} > {self.MANIFEST_MAX_SIZE}"
            )

        received_hash = hashlib.sha256(resp.body).hexdigest()
        if received_hash != uri.digest.hash:
            raise RegistryError(
                "Hash of received App manifest and the hash specified in Target do not match: "
                f"{received_hash} != {uri.digest.hash}"
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise RegistryError(f"Received App manifest is not valid JSON: {exc}") from exc

    def download_blob(self, uri: Uri, filepath: Union[str, os.PathLike], expected_size: int) -> None:
        blob_url = self._blob_url(uri)
        log.debug("Downloading App blob: %s", blob_url)

        client = self._http_client_factory([self._bearer_auth_header(uri)])
        path = Path(filepath)
        hasher = hashlib.sha256()
        written = 0

        try:
            out = path.open("wb")
        except OSError as exc:
            raise RegistryError(f"Failed to open a file: {path}") from exc

        with out:
            def write(data: bytes) -> int:
                nonlocal written
                if written + len(data) > expected_size:
                    log.error(
                        "Received data size exceeds the expected size: %d != %d",
                        written + len(data),
                        expected_size,
                    )
                    return len(data) + 1
                count = out.write(data)
                written += count
                hasher.update(data)
                return count

            resp = client.download(blob_url, write)
            if not resp.is_ok:
                raise RegistryError(f"Failed to download App blob: {resp.status_str}")

        if written != expected_size:
            path.unlink(missing_ok=True)
            raise RegistryError(
                f"Size of downloaded App blob does not equal to the expected one: {written} != {expected_size}"
            )

        received_hash = hasher.hexdigest()
        if received_hash != uri.digest.hash:
            path.unlink(missing_ok=True)
            raise RegistryError(
                "Hash of downloaded App blob does not equal to the expected one: "
                f"{received_hash} != {uri.digest.hash}"
            )

    def _basic_auth_header(self) -> str:
        log.debug("Getting Docker Registry credentials from %s", self._creds_endpoint)
        resp = self._ota_lite_client.get(self._creds_endpoint, self.AUTH_MATERIAL_MAX_SIZE)
        if not resp.is_ok:
            raise RegistryError(
                f"Failed to get Docker Registry credentials from {self._creds_endpoint}; "
                f"error: {resp.status_str}"
            )

        creds = _json_object(resp)
        username = _as_string(creds.get("Username"))
        hub_credential = _as_string(creds.get("Secret"))
        if not username or not hub_credential:
            raise RegistryError(f"Got invalid Docker Registry credentials: {resp.text}")

        encoded = base64.b64encode(f"{username}:{hub_credential}".encode()).decode()
        log.debug("Got Docker Registry credentials, username: %s", username)
        return "authorization: basic " + encoded

    def _bearer_auth_header(self, uri: Uri) -> str:
        grant_endpoint = f"https://{uri.registry_hostname}/token-auth/"
        log.debug("Getting Docker Registry token from %s", grant_endpoint)

        client = self._http_client_factory([self._basic_auth_header()])
        params = f"?service=registry&scope=repository:{uri.repo}:pull"
        resp = client.get(grant_endpoint + params, self.AUTH_MATERIAL_MAX_SIZE)
        if not resp.is_ok:
            raise RegistryError(
                f"Failed to get Auth Token at Docker Registry {grant_endpoint}; error: {resp.status_str}"
            )

        bearer = _as_string(_json_object(resp).get("token"))
        if not bearer:
            raise RegistryError(f"Got invalid token from Docker Registry: {resp.text}")
        return "authorization: bearer " + bearer

    @classmethod
    def _manifest_url(cls, uri: Uri) -> str:
        return (
            f"https://{uri.registry_hostname}{cls.SUPPORTED_REGISTRY_VERSION}"
            f"{uri.repo}{cls.MANIFEST_ENDPOINT}{uri.digest}"
        )

    @classmethod
    def _blob_url(cls, uri: Uri) -> str:
        return f"https://{uri.registry_hostname}{cls.SUPPORTED_REGISTRY_VERSION}{uri.repo}{cls.BLOB_ENDPOINT}{uri.digest}"