"""Bootloader rollback handling: boot counters and firmware upgrade flags."""

from __future__ import annotations

import logging
import os
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Tuple, Union

log = logging.getLogger(__name__)

DEFAULT_DEPLOY_DIR = "/ostree/deploy/lmp/deploy/"
_FIRMWARE_VERSION_FILE = "/usr/lib/firmware/version.txt"
_VERSION_WATERMARK = "bootfirmware_version"


class RollbackMode(Enum):
    """How the bootloader is told about updates and successful boots."""

    BOOTLOADER_NONE = "none"
    UBOOT_GENERIC = "uboot_generic"
    UBOOT_MASKED = "uboot_masked"
    FIOVB = "fiovb"


def _shell(cmd: str) -> Tuple[int, str]:
    """Run a shell command and return its exit code and standard output."""
    try:
        result = subprocess.run(cmd, shell=True, capture_output=True, text=True, check=False)
    except OSError as exc:
        log.debug("Failed to run %s: %s", cmd, exc)
        return -1, ""
    return result.returncode, result.stdout


class Rollback:
    """A rollback strategy that does nothing; the base of all others."""

    def __init__(self, deploy_dir: Union[str, os.PathLike] = DEFAULT_DEPLOY_DIR):
        self._deploy_dir = Path(deploy_dir)

    def set_boot_ok(self) -> None:
        """Mark the current boot as successful."""

    def update_notify(self) -> None:
        """Tell the bootloader that an update is about to be installed."""

    def install_notify(self, target_hash: str) -> None:
        """Tell the bootloader that the target with this hash has been installed."""

    def get_version(self, target_hash: str) -> str:
        """Return the boot firmware version shipped with a deployed target, or ''."""
        version_file = ""
        for entry in sorted(self._deploy_dir.iterdir()):
            if target_hash in str(entry):
                version_file = str(entry) + _FIRMWARE_VERSION_FILE
                break
        if not version_file:
            log.warning("Target hash not found")
            return ""

        log.info("Target firmware file: %s", version_file)
        try:
            with open(version_file, encoding="utf-8", errors="replace", newline="") as stream:
                content = stream.read()
        except OSError:
            content = ""

        pos = content.find(_VERSION_WATERMARK)
        if pos == -1:
            log.warning("Target firmware version not found")
            return ""
        version = content[:pos] + content[pos + len(_VERSION_WATERMARK) + 1:]
        log.info("Target firmware version: %s", version)
        return version

    @staticmethod
    def _run_all(commands: Iterable[Tuple[str, str]]) -> None:
        for cmd, failure in commands:
            code, _ = _shell(cmd)
            if code != 0:
                log.warning("%s", failure)

    def _firmware_notify(self, target_hash: str, printenv: str, setenv: str, label: str) -> None:
        version = self.get_version(target_hash)
        if not version:
            return
        code, current = _shell(f"{printenv} bootfirmware_version")
        if code != 0:
            log.warning("Failed to read bootfirmware_version")
            return
        log.info("Current %s version: %s", label, current)
        if current != version:
            log.info("Update firmware to version: %s", version)
            code, _ = _shell(f"{setenv} bootupgrade_available 1")
            if code != 0:
                log.warning("Failed to set bootupgrade_available")


class GenericRollback(Rollback):
    """U-Boot with a plain boot counter."""

    def set_boot_ok(self) -> None:
        self._run_all([("fw_setenv bootcount 0", "Failed resetting bootcount")])

    def update_notify(self) -> None:
        self._run_all(
            [
                ("fw_setenv bootcount 0", "Failed resetting bootcount"),
                ("fw_setenv rollback 0", "Failed resetting rollback flag"),
            ]
        )


class MaskedRollback(Rollback):
    """U-Boot that only counts boots while an upgrade is available."""

    def set_boot_ok(self) -> None:
        self._run_all(
            [
                ("fw_setenv bootcount 0", "Failed resetting bootcount"),
                ("fw_setenv upgrade_available 0", "Failed resetting upgrade_available for u-boot"),
            ]
        )

    def update_notify(self) -> None:
        self._run_all(
            [
                ("fw_setenv bootcount 0", "Failed resetting bootcount"),
                ("fw_setenv upgrade_available 1", "Failed setting upgrade_available for u-boot"),
                ("fw_setenv rollback 0", "Failed resetting rollback flag"),
            ]
        )

    def install_notify(self, target_hash: str) -> None:
        self._firmware_notify(target_hash, "fw_printenv", "fw_setenv", "boot firmware")


class FiovbRollback(Rollback):
    """Verified boot storing its variables in secure storage."""

    def set_boot_ok(self) -> None:
        self._run_all(
            [
                ("fiovb_setenv bootcount 0", "Failed resetting bootcount"),
                ("fiovb_setenv upgrade_available 0", "Failed resetting upgrade_available"),
            ]
        )

    def update_notify(self) -> None:
        self._run_all(
            [
                ("fiovb_setenv bootcount 0", "Failed resetting bootcount"),
                ("fiovb_setenv upgrade_available 1", "Failed setting upgrade_available"),
                ("fiovb_setenv rollback 0", "Failed resetting rollback flag"),
                ("fiovb_setenv bootupgrade_available 1", "Failed to set bootupgrade_available"),
            ]
        )

    def install_notify(self, target_hash: str) -> None:
        self._firmware_notify(target_hash, "fiovb_printenv", "fiovb_setenv", "firmware")


class ExceptionRollback(Rollback):
    """Used for unsupported modes: every operation fails."""

    def set_boot_ok(self) -> None:
        raise NotImplementedError("rollback mode is not supported")

    def update_notify(self) -> None:
        raise NotImplementedError("rollback mode is not supported")

    def install_notify(self, target_hash: str) -> None:
        raise NotImplementedError("rollback mode is not supported")


_ROLLBACKS = {
    RollbackMode.BOOTLOADER_NONE: Rollback,
    RollbackMode.UBOOT_GENERIC: GenericRollback,
    RollbackMode.UBOOT_MASKED: MaskedRollback,
    RollbackMode.FIOVB: FiovbRollback,
}


def make_rollback(mode: Any) -> Rollback:
    """Create the rollback strategy for a mode; unknown modes get ExceptionRollback."""
    try:
        factory = _ROLLBACKS.get(mode, ExceptionRollback)
    except TypeError:
        factory = ExceptionRollback
    return factory()


class BootloaderLite:
    """Forwards bootloader notifications to the configured rollback strategy."""

    def __init__(self, mode: Any):
        self._rollback = make_rollback(mode)

    @property
    def rollback(self) -> Rollback:
        return self._rollback

    def set_boot_ok(self) -> None:
        self._rollback.set_boot_ok()

    def update_notify(self) -> None:
        self._rollback.update_notify()

    def install_notify(self, target_hash: str) -> None:
        self._rollback.install_notify(target_hash)