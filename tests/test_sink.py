# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Tests for certificate persistence."""

import stat
from datetime import datetime, timedelta, timezone

import pytest
from structlog.testing import capture_logs

import gateway_certs.sink as sink_module
from gateway_certs.errors import PersistenceError
from gateway_certs.models import CARoot, LeafCert
from gateway_certs.sink import (
    CLIENT_CERT_FILE,
    CLIENT_PRIVATE_KEY_FILE,
    ROOT_CA_FILE,
    FileCertSink,
    read_bundle,
)


def _bundle(suffix: str = "") -> tuple[CARoot, LeafCert]:
    root = CARoot(id="root-1", root_cert_pem=f"-----ROOT{suffix}-----\n", active=True)
    leaf = LeafCert(
        cert_pem=f"-----CERT{suffix}-----\n",
        private_key_pem=f"-----KEY{suffix}-----\n",
        valid_before=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    return root, leaf


def _mode(path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


class TestFileCertSink:
    """Tests for FileCertSink.write()."""

    @pytest.mark.asyncio
    async def test_writes_three_files(self, tmp_path):
        root, leaf = _bundle()
        await FileCertSink(tmp_path).write(root, leaf)

        assert read_bundle(tmp_path) == (root.root_cert_pem, leaf.cert_pem, leaf.private_key_pem)
        assert sorted(p.name for p in tmp_path.iterdir()) == sorted(
            [ROOT_CA_FILE, CLIENT_CERT_FILE, CLIENT_PRIVATE_KEY_FILE]
        )

    @pytest.mark.asyncio
    async def test_content_is_byte_exact(self, tmp_path):
        """PEM text is written verbatim, line endings included."""
        root = CARoot(root_cert_pem="a\r\nb\n", active=True)
        leaf = LeafCert(
            cert_pem="c\r\n",
            private_key_pem="é\n",
            valid_before=datetime.now(timezone.utc),
        )
        await FileCertSink(tmp_path).write(root, leaf)

        assert (tmp_path / ROOT_CA_FILE).read_bytes() == b"a\r\nb\n"
        assert (tmp_path / CLIENT_CERT_FILE).read_bytes() == b"c\r\n"
        assert (tmp_path / CLIENT_PRIVATE_KEY_FILE).read_bytes() == "é\n".encode("utf-8")

    @pytest.mark.asyncio
    async def test_overwrites_previous_bundle(self, tmp_path):
        sink = FileCertSink(tmp_path)
        await sink.write(*_bundle("-old"))
        root, leaf = _bundle("-new")
        await sink.write(root, leaf)

        assert read_bundle(tmp_path) == (root.root_cert_pem, leaf.cert_pem, leaf.private_key_pem)

    @pytest.mark.asyncio
    async def test_private_key_is_owner_only(self, tmp_path):
        await FileCertSink(tmp_path).write(*_bundle())

        assert _mode(tmp_path / CLIENT_PRIVATE_KEY_FILE) == 0o600
        assert _mode(tmp_path / ROOT_CA_FILE) == 0o644
        assert _mode(tmp_path / CLIENT_CERT_FILE) == 0o644

    @pytest.mark.asyncio
    async def test_creates_missing_directory(self, tmp_path):
        target = tmp_path / "nested" / "certs"
        await FileCertSink(target).write(*_bundle())

        assert (target / ROOT_CA_FILE).exists()
        # readable and traversable by a data plane running as another user
        assert _mode(target) & 0o055 == 0o055
        assert _mode(target / CLIENT_PRIVATE_KEY_FILE) == 0o600

    @pytest.mark.asyncio
    async def test_custom_filenames(self, tmp_path):
        root, leaf = _bundle()
        sink = FileCertSink(
            tmp_path,
            root_ca_filename="ca.pem",
            client_cert_filename="tls.crt",
            client_private_key_filename="tls.key",
        )
        await sink.write(root, leaf)

        assert read_bundle(tmp_path, "ca.pem", "tls.crt", "tls.key") == (
            root.root_cert_pem,
            leaf.cert_pem,
            leaf.private_key_pem,
        )

    @pytest.mark.asyncio
    async def test_failed_staging_keeps_previous_bundle(self, tmp_path, monkeypatch):
        """A failure on the last file leaves every old file in place."""
        sink = FileCertSink(tmp_path)
        old_root, old_leaf = _bundle("-old")
        await sink.write(old_root, old_leaf)

        real_stage = sink_module._stage_file
        calls = {"n": 0}

        def flaky_stage(directory, name, content, mode):
            calls["n"] += 1
            if calls["n"] == 3:
                raise OSError(28, "No space left on device")
            return real_stage(directory, name, content, mode)

        monkeypatch.setattr(sink_module, "_stage_file", flaky_stage)

        with pytest.raises(PersistenceError):
            await sink.write(*_bundle("-new"))

        assert read_bundle(tmp_path) == (
            old_root.root_cert_pem,
            old_leaf.cert_pem,
            old_leaf.private_key_pem,
        )
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_partial_replace_is_logged(self, tmp_path, monkeypatch):
        """A rename failing midway reports which files were already swapped."""
        sink = FileCertSink(tmp_path)
        await sink.write(*_bundle("-old"))

        real_replace = sink_module.os.replace
        calls = {"n": 0}

        def flaky_replace(src, dst):
            calls["n"] += 1
            if calls["n"] == 2:
                raise OSError(5, "Input/output error")
            return real_replace(src, dst)

        monkeypatch.setattr(sink_module.os, "replace", flaky_replace)

        with capture_logs() as logs:
            with pytest.raises(PersistenceError):
                await sink.write(*_bundle("-new"))

        warnings = [e for e in logs if e["event"] == "certificate_set_partially_replaced"]
        assert len(warnings) == 1
        assert warnings[0]["log_level"] == "warning"
        assert warnings[0]["replaced"] == [ROOT_CA_FILE]
        assert warnings[0]["pending"] == [CLIENT_CERT_FILE, CLIENT_PRIVATE_KEY_FILE]
        assert (tmp_path / ROOT_CA_FILE).read_text() == "-----ROOT-new-----\n"
        assert (tmp_path / CLIENT_CERT_FILE).read_text() == "-----CERT-old-----\n"
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_directory_is_a_file(self, tmp_path):
        blocker = tmp_path / "certs"
        blocker.write_text("not a directory")

        with pytest.raises(PersistenceError) as exc_info:
            await FileCertSink(blocker).write(*_bundle())

        assert str(blocker) in str(exc_info.value)


class TestReadBundle:
    """Tests for read_bundle()."""

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_bundle(tmp_path)
