from __future__ import annotations

import json
import os
import shutil
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
SANDBOX_HOME = ROOT / ".test_place" / "global-home"
os.environ.setdefault("SCAFFOLDKIT_HOME", str(SANDBOX_HOME))
SANDBOX_HOME.mkdir(parents=True, exist_ok=True)
PYTEST_TEMP = Path(os.environ.get("PYTEST_DEBUG_TEMPROOT", "/tmp/scaffoldkit-pytest")).resolve()
os.environ.setdefault("PYTEST_DEBUG_TEMPROOT", str(PYTEST_TEMP))
PYTEST_TEMP.mkdir(parents=True, exist_ok=True)
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from scaffoldkit.domain.cancellation import CancellationToken  # noqa: E402
from scaffoldkit.ports.source_fetchers import GitClient  # noqa: E402
from scaffoldkit.settings import RuntimeSettings  # noqa: E402


class FakeGitClient(GitClient):
    """Records clones and copies a local directory in place of a network fetch."""

    def __init__(self) -> None:
        self.sources: Dict[str, Path] = {}
        self.clones: List[Tuple[str, Optional[str]]] = []
        self.verify_results: List[bool] = []
        self.delay = 0.0
        self.error: Optional[Exception] = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def clone(self, url: str, ref: Optional[str], destination: Path, cancel: CancellationToken) -> None:
        with self._lock:
            self.clones.append((url, ref))
        self.started.set()
        if self.error is not None:
            raise self.error
        destination.mkdir(parents=True)
        (destination / ".git").mkdir()
        (destination / "partial.txt").write_text("partial\n", encoding="utf-8")
        deadline = time.monotonic() + self.delay
        while time.monotonic() < deadline:
            cancel.raise_if_cancelled("clone")
            time.sleep(0.01)
        source = self.sources.get(url)
        if source is not None:
            shutil.copytree(source, destination, dirs_exist_ok=True)
        else:
            (destination / "README.md").write_text(f"{url}@{ref}\n", encoding="utf-8")
        (destination / "partial.txt").unlink()

    def verify_checkout(self, destination: Path, ref: Optional[str]) -> bool:
        with self._lock:
            if self.verify_results:
                return self.verify_results.pop(0)
        return True

    @property
    def clone_count(self) -> int:
        return len(self.clones)


def make_runtime_settings(base: Path) -> RuntimeSettings:
    home = base / "home"
    cache_dir = base / "cache"
    state_dir = base / "state"
    log_dir = base / "logs"
    for directory in (home, state_dir, log_dir):
        directory.mkdir(parents=True, exist_ok=True)
    return RuntimeSettings(
        home_dir=home,
        cache_dir=cache_dir,
        state_dir=state_dir,
        log_dir=log_dir,
        lock_timeout_seconds=10.0,
        cli_version="0.3.0",
    )


def sample_manifest() -> Dict[str, Any]:
    return {
        "schemaVersion": "1.0.0",
        "id": "acme/webapp",
        "name": "Web application",
        "description": "Full-stack starter",
        "placeholders": {
            "PROJECT_NAME": {"type": "string", "description": "Project name"},
            "PORT": {"type": "number", "default": 8080},
            "API_TOKEN": {"type": "string", "sensitive": True, "default": "changeme"},
        },
        "dimensions": {
            "deployment": {"values": ["cloudflare", "linode"], "default": "linode"},
            "database": {"values": ["d1", "postgres", "none"], "default": "none"},
            "features": {
                "type": "multi",
                "values": ["auth", "billing", "email"],
                "default": [],
                "requires": {"billing": ["auth"]},
            },
        },
        "gates": {
            "cloudflare": {"allowed": {"database": ["d1", "none"]}},
        },
        "featureSpecs": {
            "auth": {"needs": {"database": "required"}},
        },
    }


@pytest.fixture()
def runtime_settings(tmp_path: Path) -> RuntimeSettings:
    return make_runtime_settings(tmp_path / "runtime")


@pytest.fixture()
def fake_git() -> FakeGitClient:
    return FakeGitClient()


@pytest.fixture()
def manifest_payload() -> Dict[str, Any]:
    return sample_manifest()


TemplateFactory = Callable[..., Path]


@pytest.fixture()
def template_factory(tmp_path: Path) -> TemplateFactory:
    """Write a template directory: manifest, files, optional setup script and assets."""

    def make(
        name: str = "template",
        *,
        manifest: Optional[Mapping[str, Any]] = None,
        files: Optional[Mapping[str, str]] = None,
        setup: Optional[str] = None,
        assets: Optional[Mapping[str, str]] = None,
    ) -> Path:
        root = tmp_path / "templates" / name
        root.mkdir(parents=True, exist_ok=True)
        payload = sample_manifest() if manifest is None else manifest
        (root / "template.json").write_text(json.dumps(payload, indent=2), encoding="utf-8")
        for relative, content in (files or {"README.md": "# ⦃PROJECT_NAME⦄\n"}).items():
            target = root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        if setup is not None:
            (root / "_setup.py").write_text(setup, encoding="utf-8")
        for relative, content in (assets or {}).items():
            target = root / "__scaffold__" / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return root

    return make
