"""
Shared pytest fixtures for relay contract tests.
"""
import threading

import pytest

from relay.tests.contracts._relay_harness import start_server, stop_server


@pytest.fixture(autouse=False)  # Set to True to enable automatic thread leak detection
def thread_leak_guard():
    """
    Optional fixture to detect thread leaks between tests.

    Request it explicitly in tests that must shut down every thread they start.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    new_threads = [t for t in threading.enumerate() if t.ident not in before]
    for t in new_threads:
        t.join(timeout=2.0)
    leaked = [t for t in threading.enumerate() if t.ident not in before]
    if leaked:
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked)
        assert False, f"Thread leak detected - shutdown incomplete.\nLeaked threads:\n{thread_info}"


@pytest.fixture
def static_root(tmp_path):
    """Directory with a viewer page and a nested asset, next to a file that must stay private."""
    root = tmp_path / "www"
    (root / "js").mkdir(parents=True)
    (root / "index.html").write_text("<html><body>viewer</body></html>")
    (root / "js" / "viewer.js").write_text("console.log('viewer');")
    (tmp_path / "secret.txt").write_text("private")
    return root


@pytest.fixture
def relay_server(static_root):
    """In-process HTTP server + running dispatcher. Yields (server, dispatcher)."""
    server, dispatcher = start_server(static_root=str(static_root))
    yield server, dispatcher
    stop_server(server, dispatcher)


RELAY_ENV_VARS = [
    "RELAY_LISTEN",
    "RELAY_FORMAT",
    "RELAY_QUEUE",
    "RELAY_REGISTRATION_QUEUE",
    "RELAY_MAX_FRAME_BYTES",
    "RELAY_WS_COMPRESSION",
    "RELAY_VERBOSITY",
    "RELAY_STATIC_ROOT",
    "RELAY_MAX_CLIENTS",
    "RELAY_VERIFY_PNG_CRC",
    "RELAY_LOG_FILE",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """
    No RELAY_* variables and an env file path that does not exist.

    Each variable is set then deleted so teardown also removes whatever an
    env file loaded during the test.
    """
    for name in RELAY_ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.setenv("RELAY_ENV_FILE", str(tmp_path / "missing.env"))
    return monkeypatch
