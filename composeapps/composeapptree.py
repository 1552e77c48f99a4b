"""Apps and container images delivered through an ostree repository."""

from __future__ import annotations

import logging
import os
from typing import Protocol, Tuple

log = logging.getLogger(__name__)


class OstreeRepo(Protocol):
    def add_remote(self, name: str, url: str, ca_file: str, cert_file: str, pkey_file: str) -> None: ...

    def pull(self, remote: str, branch: str, commit_hash: str) -> None: ...

    def checkout(self, commit_hash: str, src_dir: str, dst_dir: str) -> None: ...


class KeyManager(Protocol):
    ca_file: str
    cert_file: str
    pkey_file: str


def parse_tree_uri(uri: str) -> Tuple[str, str]:
    """Split ``<branch>@<commit>`` into its branch and commit hash."""
    branch, sep, commit_hash = uri.partition("@")
    if not sep:
        raise ValueError(f"Invalid app uri: {uri}")
    return branch, commit_hash


def _join(base: str, relative: str) -> str:
    return os.path.join(base, relative.lstrip("/"))


class ComposeAppTree:
    """Pulls an apps tree from a remote and checks it out onto the system."""

    REMOTE_DEF_NAME = "treehub"
    IMAGES_DIR = "/images"
    APPS_DIR = "/apps"
    WHITEOUTS = "/.whiteouts"

    def __init__(self, repo: OstreeRepo, apps_dir: str, images_dir: str):
        self._repo = repo
        self._apps_dir = str(apps_dir)
        self._images_dir = str(images_dir)
        self._whiteouts_path = _join(self._images_dir, self.WHITEOUTS)

    def pull(self, remote_url: str, key_manager: KeyManager, uri: str) -> None:
        self._repo.add_remote(
            self.REMOTE_DEF_NAME,
            remote_url,
            key_manager.ca_file,
            key_manager.cert_file,
            key_manager.pkey_file,
        )
        branch, commit_hash = parse_tree_uri(uri)
        self._repo.pull(self.REMOTE_DEF_NAME, branch, commit_hash)

    def checkout(self, uri: str) -> None:
        _, commit_hash = parse_tree_uri(uri)
        self._repo.checkout(commit_hash, self.APPS_DIR, self._apps_dir)
        self._repo.checkout(commit_hash, self.IMAGES_DIR, self._images_dir)
        self._apply_whiteouts(commit_hash)

    def _apply_whiteouts(self, commit_hash: str) -> None:
        self._repo.checkout(commit_hash, self.WHITEOUTS, self._images_dir)
        log.debug("Processing the file containing non-regular file records: %s", self._whiteouts_path)
        try:
            with open(self._whiteouts_path, encoding="utf-8") as records:
                lines = [line.rstrip("\n") for line in records]
        except OSError:
            return

        for line in lines:
            fields = line.split(" ")
            if len(fields) != 3:
                log.error("Invalid the non-regular file record: expected three items got %d", len(fields))
                return

            dst_file = _join(self._images_dir, fields[0])
            mode = int(fields[1])
            device = int(fields[2])

            if os.path.lexists(dst_file):
                log.debug("A non-regular file has been already created: %s", dst_file)
                continue

            log.debug("Creating a non-regular file; path: %s mode: %d device %d", dst_file, mode, device)
            try:
                os.mknod(dst_file, mode, device)
            except OSError as exc:
                log.error("Failed to create a non-regular file: %s %s", dst_file, exc)