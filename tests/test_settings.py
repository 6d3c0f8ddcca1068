"""Tests for environment-driven settings"""

import os
import subprocess
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

from sntp_client.config.settings import Settings


def test_defaults(monkeypatch):
    for name in ("SNTP_SERVER", "SNTP_PORT", "SNTP_TIMEOUT", "SNTP_MAX_DELAY", "SNTP_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    cfg = Settings(_env_file=None)

    assert cfg.SERVER == "pool.ntp.org"
    assert cfg.PORT == 123
    assert cfg.TIMEOUT == 1.0
    assert cfg.MAX_DELAY == 1.0
    assert cfg.LOG_LEVEL == "WARNING"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SNTP_SERVER", "time.example.com")
    monkeypatch.setenv("SNTP_PORT", "10123")
    monkeypatch.setenv("SNTP_TIMEOUT", "2.5")

    cfg = Settings(_env_file=None)

    assert cfg.SERVER == "time.example.com"
    assert cfg.PORT == 10123
    assert cfg.TIMEOUT == 2.5


def test_env_file(tmp_path, monkeypatch):
    monkeypatch.delenv("SNTP_SERVER", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("SNTP_SERVER=192.0.2.1\nSNTP_MAX_DELAY=0.5\n")

    cfg = Settings(_env_file=str(env_file))

    assert cfg.SERVER == "192.0.2.1"
    assert cfg.MAX_DELAY == 0.5


@pytest.mark.parametrize("name,value", [
    ("SNTP_PORT", "0"),
    ("SNTP_PORT", "65536"),
    ("SNTP_TIMEOUT", "0"),
    ("SNTP_TIMEOUT", "soon"),
])
def test_invalid_values_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_library_import_ignores_environment(tmp_path):
    """A malformed SNTP_* variable only matters once settings are loaded."""
    src = Path(__file__).resolve().parents[1] / "src"
    env = dict(os.environ, SNTP_PORT="abc")
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(src), env.get("PYTHONPATH")]))

    proc = subprocess.run(
        [sys.executable, "-c",
         "from sntp_client.time.exchange import NtpClient; NtpClient('192.0.2.1', port=4123)"],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
    )

    assert proc.returncode == 0, proc.stderr
