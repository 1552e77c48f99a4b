"""Queries the Docker daemon about running containers."""

from __future__ import annotations

import http.client
import json
import socket
import subprocess
from typing import Any, Optional
from urllib.parse import urlsplit

from composeapps.docker import HttpClient, HttpResponse

DOCKER_SOCKET = "/var/run/docker.sock"
_CONTAINERS_URL = "http://localhost/containers/json"
_CURL_CMD = ["/usr/bin/curl", "--unix-socket", DOCKER_SOCKET, _CONTAINERS_URL]


class DockerError(RuntimeError):
    """Raised when the Docker daemon cannot be queried."""


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str, timeout: float = 60):
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketHttpClient:
    """Minimal HTTP client speaking over a Unix domain socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path

    def get(self, url: str, maxsize: Optional[int] = None) -> HttpResponse:
        parts = urlsplit(url)
        path = (parts.path or "/") + (f"?{parts.query}" if parts.query else "")
        conn = _UnixHTTPConnection(self._socket_path)
        try:
            conn.request("GET", path)
            resp = conn.getresponse()
            body = resp.read() if maxsize is None else resp.read(maxsize + 1)
            if maxsize is not None and len(body) > maxsize:
                return HttpResponse(body, resp.status, "response exceeds the maximum size")
            return HttpResponse(body, resp.status)
        except (OSError, http.client.HTTPException) as exc:
            return HttpResponse(b"", 0, str(exc))
        finally:
            conn.close()

    def download(self, url: str, write_cb) -> HttpResponse:
        resp = self.get(url)
        if resp.is_ok and write_cb(resp.body) != len(resp.body):
            return HttpResponse(b"", resp.status_code, "write callback aborted the transfer")
        return HttpResponse(b"", resp.status_code, resp.error)


class DockerClient:
    """Checks which compose services are running according to dockerd."""

    def __init__(self, http_client: Optional[HttpClient] = None):
        self._http_client = http_client if http_client is not None else _UnixSocketHttpClient(DOCKER_SOCKET)
        self._containers: Optional[Any] = None

    def service_running(self, app: str, service: str, hash: str) -> bool:
        self._update_container_status()
        containers = self._containers if isinstance(self._containers, list) else []
        for container in containers:
            if not isinstance(container, dict):
                continue
            labels = container.get("Labels") or {}
            if (
                labels.get("com.docker.compose.project") == app
                and labels.get("com.docker.compose.service") == service
                and labels.get("io.compose-spec.config-hash") == hash
            ):
                return True
        return False

    def _update_container_status(self, curl: bool = False) -> None:
        if curl:
            cmd = " ".join(_CURL_CMD)
            try:
                result = subprocess.run(_CURL_CMD, capture_output=True, check=False)
            except OSError:
                result = None
            if result is not None and result.returncode == 0:
                try:
                    self._containers = json.loads(result.stdout)
                except ValueError:
                    pass
        else:
            cmd = _CONTAINERS_URL
            resp = self._http_client.get(_CONTAINERS_URL, None)
            if resp.is_ok:
                try:
                    self._containers = resp.json()
                except ValueError:
                    self._containers = None
        # An empty list is a valid answer (no containers); only a missing answer is an error.
        if self._containers is None:
            raise DockerError(f"Request to dockerd has failed: {cmd}")