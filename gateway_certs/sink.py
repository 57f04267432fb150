# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Certificate persistence.

``FileCertSink`` writes the root CA, client certificate and client private
key as raw PEM files under fixed names. All three files are staged as temp
files first and only renamed into place once every one of them is on disk.
A failure while staging leaves the previous artifacts untouched and no
reader ever sees a truncated file. A rename failing after an earlier one
succeeded leaves a mixed set on disk and is logged as a warning.
"""

import asyncio
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from .errors import PersistenceError
from .models import CARoot, LeafCert

logger = structlog.get_logger(__name__)

ROOT_CA_FILE = "root-ca.pem"
CLIENT_CERT_FILE = "client.crt"
CLIENT_PRIVATE_KEY_FILE = "client.pem"

_CERT_MODE = 0o644
_KEY_MODE = 0o600
_DIR_MODE = 0o755


class CertSink(ABC):
    """Destination for a fetched root/leaf pair."""

    @abstractmethod
    async def write(self, root: CARoot, leaf: LeafCert) -> None:
        """
        Durably persist the bundle.

        Raises:
            PersistenceError: The bundle could not be written
        """


class FileCertSink(CertSink):
    """Writes the bundle into a directory as three PEM files."""

    def __init__(
        self,
        directory: str | os.PathLike[str],
        root_ca_filename: str = ROOT_CA_FILE,
        client_cert_filename: str = CLIENT_CERT_FILE,
        client_private_key_filename: str = CLIENT_PRIVATE_KEY_FILE,
    ):
        self.directory = Path(directory)
        self.root_ca_filename = root_ca_filename
        self.client_cert_filename = client_cert_filename
        self.client_private_key_filename = client_private_key_filename

    async def write(self, root: CARoot, leaf: LeafCert) -> None:
        files = [
            (self.root_ca_filename, root.root_cert_pem, _CERT_MODE),
            (self.client_cert_filename, leaf.cert_pem, _CERT_MODE),
            (self.client_private_key_filename, leaf.private_key_pem, _KEY_MODE),
        ]
        try:
            await asyncio.to_thread(write_files_atomically, self.directory, files)
        except OSError as e:
            raise PersistenceError(f"failed to write certificates to {self.directory}: {e}") from e

        logger.debug("certificates_persisted", directory=str(self.directory))


def write_files_atomically(directory: Path, files: list[tuple[str, str, int]]) -> None:
    """Stage every file, then rename them all into place."""
    directory.mkdir(mode=_DIR_MODE, parents=True, exist_ok=True)

    staged: list[tuple[Path, Path]] = []
    replaced = 0
    try:
        for name, content, mode in files:
            staged.append((_stage_file(directory, name, content, mode), directory / name))
        for tmp_path, target in staged:
            os.replace(tmp_path, target)
            replaced += 1
    except OSError:
        if replaced:
            logger.warning(
                "certificate_set_partially_replaced",
                directory=str(directory),
                replaced=[target.name for _, target in staged[:replaced]],
                pending=[target.name for _, target in staged[replaced:]],
            )
        raise
    finally:
        # no-op after a complete commit
        for tmp_path, _ in staged:
            tmp_path.unlink(missing_ok=True)
    _fsync_directory(directory)


def _stage_file(directory: Path, name: str, content: str, mode: int) -> Path:
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            os.fchmod(f.fileno(), mode)
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return tmp_path


def _fsync_directory(directory: Path) -> None:
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def read_bundle(
    directory: str | os.PathLike[str],
    root_ca_filename: str = ROOT_CA_FILE,
    client_cert_filename: str = CLIENT_CERT_FILE,
    client_private_key_filename: str = CLIENT_PRIVATE_KEY_FILE,
) -> tuple[str, str, str]:
    """Read back (root CA, client cert, client private key) PEM strings."""
    base = Path(directory)
    return (
        (base / root_ca_filename).read_bytes().decode("utf-8"),
        (base / client_cert_filename).read_bytes().decode("utf-8"),
        (base / client_private_key_filename).read_bytes().decode("utf-8"),
    )
