"""Shared fixtures: package sources and packages directories in tmp_path."""

import json
import os
import stat
from pathlib import Path
from typing import Optional

import pytest

import nodeploy


HOOK_TEMPLATE = """#!/bin/sh
echo "$NODEPLOY_HOOK $NODEPLOY_PACKAGE_NAME@$NODEPLOY_PACKAGE_VERSION" >> "$HOOK_LOG"
exit {code}
"""


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
	"""Keep the host's environment out of every test."""
	monkeypatch.setattr(nodeploy, "NODEPLOY_CONFIG", "")
	monkeypatch.setattr(nodeploy, "NODEPLOY_HOOK_TIMEOUT", 0)
	monkeypatch.setattr(nodeploy, "_quiet", True)
	monkeypatch.setattr(nodeploy, "_verbose", False)
	monkeypatch.setattr(nodeploy, "_no_color", True)


@pytest.fixture
def packages_dir(tmp_path) -> Path:
	path = tmp_path / "packages"
	path.mkdir()
	return path


@pytest.fixture
def hook_log(tmp_path) -> Path:
	return tmp_path / "hooks.log"


@pytest.fixture
def config(hook_log) -> nodeploy.Config:
	return nodeploy.Config(env={"HOOK_LOG": str(hook_log)})


def read_hook_log(hook_log: Path) -> list[str]:
	if not hook_log.exists():
		return []
	return hook_log.read_text().splitlines()


def write_hook(directory: Path, hook: str, code: int = 0, body: Optional[str] = None) -> Path:
	hooks_dir = directory / "hooks"
	hooks_dir.mkdir(exist_ok=True)
	script = hooks_dir / hook
	script.write_text(body if body is not None else HOOK_TEMPLATE.format(code=code))
	script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
	return script


@pytest.fixture
def make_source(tmp_path):
	"""Factory writing a package source directory.

	`hooks` maps hook names to exit codes; every listed hook logs its
	invocation to $HOOK_LOG.
	"""
	counter = {"n": 0}

	def _make(
		name: str = "myapp",
		version: str = "1.0.0",
		hooks: Optional[dict[str, int]] = None,
		**manifest_extra,
	) -> Path:
		counter["n"] += 1
		source = tmp_path / "sources" / f"{name.replace('/', '+')}-{version}-{counter['n']}"
		source.mkdir(parents=True)
		manifest = {"name": name, "version": version}
		manifest.update(manifest_extra)
		(source / "package.json").write_text(json.dumps(manifest, indent=2))
		(source / "index.js").write_text(f"console.log('{name} {version}')\n")
		for hook, code in (hooks or {}).items():
			write_hook(source, hook, code)
		return source

	return _make


@pytest.fixture
def make_record(packages_dir):
	"""Factory publishing a package directly into the store, without hooks."""

	def _make(name: str, version: str, installed_at: str) -> nodeploy.PackageRecord:
		when = nodeploy.datetime.fromisoformat(installed_at)
		directory_name, _ = nodeploy.nodeploy_store_new_directory_name(
			packages_dir, name, version, when
		)
		staged = packages_dir / nodeploy.STAGING_DIR / directory_name
		staged.mkdir(parents=True)
		(staged / "package.json").write_text(json.dumps({"name": name, "version": version}))
		record = nodeploy.PackageRecord(
			name=name,
			version=version,
			directory_name=directory_name,
			path=staged,
			installed_at=installed_at,
		)
		return nodeploy.nodeploy_store_create(packages_dir, record, staged)

	return _make


def snapshot(directory: Path) -> dict[str, object]:
	"""Everything observable below directory: files, links and their content."""
	state: dict[str, object] = {}
	for root, dirs, files in os.walk(directory):
		for name in dirs + files:
			path = Path(root) / name
			rel = str(path.relative_to(directory))
			if path.is_symlink():
				state[rel] = ("link", os.readlink(path))
			elif path.is_dir():
				state[rel] = ("dir",)
			else:
				state[rel] = ("file", path.read_bytes())
	return state
