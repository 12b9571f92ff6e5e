#!/usr/bin/env python3
# --
# File: nodeploy.py
#
# `nodeploy` installs versioned Node application bundles into a packages
# directory, activates one of them through an atomically switched `current`
# symlink, and runs lifecycle hooks around install, use and uninstall.
#
# ## Usage
#
# >   nodeploy COMMAND [OPTIONS] [ARGS...]
#
# ## Packages Directory
#
# >   .lock                  - Held while a command changes the directory
# >   .staging/              - Uncommitted installs
# >   .trash/                - Removals in progress
# >   current                - Symlink to the active package directory
# >   NAME@VERSION_STAMP/    - One directory per installed package
# >   [nodeploy.toml]        - Optional configuration
#
# ## Package Structure
#
# >   package.json           - Required: name, version, scripts, dependencies
# >   [hooks/preinstall]     - Hook: before publish, non-zero exit aborts
# >   [hooks/postinstall]    - Hook: after publish (and activation)
# >   [hooks/preuse]         - Hook: before the pointer switch, non-zero aborts
# >   [hooks/postuse]        - Hook: after the pointer switch
# >   [hooks/preuninstall]   - Hook: before removal, non-zero aborts
# >   [hooks/postuninstall]  - Hook: after removal
#
# Hook scripts may carry a `.sh` suffix. The hooks directory can be moved
# with `"nodeploy": {"hooks": "deploy/hooks"}` in package.json.

import argparse
import contextlib
import dataclasses
import fcntl
import fnmatch
import json
import os
import re
import shlex
import shutil
import stat
import subprocess
import sys
import tarfile
import tomllib
import uuid
import zipfile
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Optional, Any, Iterable, Iterator, NoReturn
from urllib.parse import urlsplit, urlunsplit, quote

import requests
from semantic_version import Version, NpmSpec

# -----------------------------------------------------------------------------
#
# GLOBALS AND CONFIGURATION
#
# -----------------------------------------------------------------------------

NODEPLOY_VERSION = "1.0.0"
NODEPLOY_PACKAGES_DIR = os.environ.get(
	"NODEPLOY_PACKAGES_DIR", "/var/lib/nodeploy/packages"
)
NODEPLOY_CONFIG = os.environ.get("NODEPLOY_CONFIG", "")
NODEPLOY_NPM = os.environ.get("NODEPLOY_NPM", "npm")
NODEPLOY_HOOK_TIMEOUT = int(os.environ.get("NODEPLOY_HOOK_TIMEOUT", "0"))
NODEPLOY_FETCH_TIMEOUT = int(os.environ.get("NODEPLOY_FETCH_TIMEOUT", "60"))
NODEPLOY_NO_COLOR = os.environ.get("NODEPLOY_NO_COLOR", "") == "1"

# Packages directory layout
CURRENT_TARGET = "@current"
CURRENT_LINK = "current"
LOCK_FILE = ".lock"
STAGING_DIR = ".staging"
TRASH_DIR = ".trash"
DESCRIPTOR_FILE = ".nodeploy.json"
MANIFEST_FILE = "package.json"
CONFIG_FILE = "nodeploy.toml"
DEFAULT_HOOKS_DIR = "hooks"

HOOK_NAMES = (
	"preinstall",
	"postinstall",
	"preuse",
	"postuse",
	"preuninstall",
	"postuninstall",
)

# Hooks each command may run (and therefore may disable)
COMMAND_HOOKS = {
	"install": ("preinstall", "postinstall", "preuse", "postuse"),
	"use": ("preuse", "postuse"),
	"uninstall": ("preuninstall", "postuninstall"),
	"clean": ("preuninstall", "postuninstall"),
}

SYNC_MODES = ("install", "ci", "preferCi")
NPM_LOCKFILES = ("package-lock.json", "npm-shrinkwrap.json")
ARCHIVE_EXTENSIONS = (".tar.gz", ".tgz", ".tar.bz2", ".tar.xz", ".tar", ".zip")

# Global runtime state
_verbose = False
_quiet = False
_no_color = NODEPLOY_NO_COLOR

# Logging context for consistent output format
_log_target: Optional[str] = None
_log_first_op = True

# -----------------------------------------------------------------------------
#
# ERRORS
#
# -----------------------------------------------------------------------------


class NodeployError(Exception):
	"""Base class for errors reported to the operator."""

	pass


class ConfigError(NodeployError):
	"""Raised when configuration or options are invalid."""

	pass


class SourceError(NodeployError):
	"""Raised when a package source cannot be fetched or extracted."""

	pass


class ManifestError(NodeployError):
	"""Raised when a package manifest is missing or invalid."""

	pass


class LockHeld(NodeployError):
	"""Raised when another process holds the packages directory lock."""

	def __init__(self, packages_dir: Path, pid: Optional[int] = None):
		self.packages_dir = packages_dir
		self.pid = pid
		holder = f" by process {pid}" if pid else ""
		super().__init__(
			f"Packages directory {packages_dir} is locked{holder}: "
			"another command is in progress"
		)


class NotFound(NodeployError):
	"""Raised when a target matches no installed package."""

	def __init__(self, target: str, reason: str = ""):
		self.target = target
		message = f"No installed package matches '{target}'"
		if reason:
			message += f" ({reason})"
		super().__init__(message)


class Ambiguous(NodeployError):
	"""Raised when a target matches several installed packages."""

	def __init__(self, target: str, candidates: list[str]):
		self.target = target
		self.candidates = candidates
		listing = "\n".join(f"  {c}" for c in candidates)
		super().__init__(f"'{target}' matches several packages:\n{listing}")


class AlreadyInstalled(NodeployError):
	"""Raised when installing a name@version that is already installed."""

	def __init__(self, name: str, version: str, directory_name: str):
		self.name = name
		self.version = version
		self.directory_name = directory_name
		super().__init__(
			f"{name}@{version} is already installed as {directory_name}\n"
			"hint: use --force to install it again"
		)


class HookFailed(NodeployError):
	"""Raised when a lifecycle hook exits non-zero or cannot be spawned."""

	def __init__(
		self,
		hook: str,
		directory_name: str,
		returncode: Optional[int],
		stderr: str = "",
	):
		self.hook = hook
		self.directory_name = directory_name
		self.returncode = returncode
		self.stderr = stderr
		status = f"exit code {returncode}" if returncode is not None else "not run"
		message = f"Hook {hook} failed for {directory_name} ({status})"
		if stderr.strip():
			message += f"\n{stderr.strip()}"
		super().__init__(message)


class DependencySyncFailed(NodeployError):
	"""Raised when the package manager fails to sync dependencies."""

	def __init__(self, command: list[str], returncode: int, stderr: str = ""):
		self.command = command
		self.returncode = returncode
		self.stderr = stderr
		message = f"Dependency sync failed (exit code {returncode}): {shlex.join(command)}"
		if stderr.strip():
			message += f"\n{stderr.strip()}"
		super().__init__(message)


class InvalidHookName(NodeployError):
	"""Raised when disabled hooks name a hook the command does not run."""

	def __init__(self, names: list[str], command: str, allowed: Iterable[str]):
		self.names = names
		self.command = command
		self.allowed = tuple(allowed)
		super().__init__(
			f"Unknown hook(s) for {command}: {', '.join(names)} "
			f"(expected one of: {', '.join(self.allowed)})"
		)


class IncompatibleEngine(NodeployError):
	"""Raised when a package requires another nodeploy version."""

	def __init__(self, name: str, compatibility: str, engine_version: str):
		self.name = name
		self.compatibility = compatibility
		self.engine_version = engine_version
		super().__init__(
			f"{name} requires nodeploy {compatibility}, this is {engine_version}"
		)


class GuardViolation(NodeployError):
	"""Raised when trying to uninstall the current package."""

	def __init__(self, directory_name: str):
		self.directory_name = directory_name
		super().__init__(
			f"Cannot uninstall {directory_name}: it is the current package\n"
			"hint: use another package first"
		)


class UnknownTask(NodeployError):
	"""Raised when running a task the current package does not define."""

	def __init__(self, task: str, available: list[str]):
		self.task = task
		self.available = available
		known = ", ".join(available) if available else "none"
		super().__init__(f"Unknown task '{task}' (available: {known})")


# -----------------------------------------------------------------------------
#
# TYPES
#
# -----------------------------------------------------------------------------


@dataclasses.dataclass
class PackageRecord:
	"""Descriptor of one installed package instance."""

	name: str
	version: str
	directory_name: str
	path: Path
	installed_at: str  # ISO timestamp, UTC
	used_at: Optional[str] = None
	scripts: dict[str, str] = dataclasses.field(default_factory=dict)
	compatibility: Optional[str] = None  # npm range on NODEPLOY_VERSION
	env: dict[str, str] = dataclasses.field(default_factory=dict)
	hooks_dir: str = DEFAULT_HOOKS_DIR

	def to_dict(self) -> dict[str, Any]:
		data = dataclasses.asdict(self)
		data["path"] = str(self.path)
		return data

	@classmethod
	def from_dict(cls, data: dict[str, Any], path: Path) -> "PackageRecord":
		"""Build a record from a descriptor, raising on missing fields."""
		if not isinstance(data, dict):
			raise ValueError("descriptor is not an object")
		for key in ("name", "version", "directory_name", "installed_at"):
			if not isinstance(data.get(key), str) or not data[key]:
				raise ValueError(f"descriptor field '{key}' is missing")
		return cls(
			name=data["name"],
			version=data["version"],
			directory_name=data["directory_name"],
			path=path,
			installed_at=data["installed_at"],
			used_at=data.get("used_at"),
			scripts=dict(data.get("scripts") or {}),
			compatibility=data.get("compatibility"),
			env=dict(data.get("env") or {}),
			hooks_dir=data.get("hooks_dir") or DEFAULT_HOOKS_DIR,
		)


@dataclasses.dataclass
class Config:
	"""Settings loaded from nodeploy.toml."""

	path: Optional[Path] = None
	env: dict[str, str] = dataclasses.field(default_factory=dict)
	sync_mode: str = "preferCi"
	production: bool = True
	hook_timeout: int = 0  # seconds, 0 disables the timeout
	disabled_hooks: frozenset[str] = frozenset()


@dataclasses.dataclass
class LockHandle:
	"""Exclusive lock on one packages directory."""

	packages_dir: Path
	path: Path
	fd: Optional[int]
	pid: int

	@property
	def held(self) -> bool:
		return self.fd is not None


@dataclasses.dataclass
class HookContext:
	"""What the hook runner needs besides the package itself."""

	action: str
	packages_dir: Path
	config: Config
	disabled: frozenset[str] = frozenset()


@dataclasses.dataclass
class InstallOptions:
	force: bool = False
	disabled_hooks: Any = None  # bool, comma separated string or iterable
	sync_mode: Optional[str] = None
	use: bool = True
	credentials: Optional[tuple[str, str]] = None


@dataclasses.dataclass
class UseOptions:
	disabled_hooks: Any = None


@dataclasses.dataclass
class UninstallOptions:
	disabled_hooks: Any = None


@dataclasses.dataclass
class CleanOptions:
	disabled_hooks: Any = None
	keep: int = 0  # most recent non-current packages to keep


@dataclasses.dataclass
class OperationResult:
	"""Outcome of install, use or uninstall.

	`warnings` holds post-hook failures: the operation itself committed.
	"""

	record: Optional[PackageRecord]
	warnings: list[HookFailed] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class CleanResult:
	removed: list[str] = dataclasses.field(default_factory=list)
	kept: list[str] = dataclasses.field(default_factory=list)
	failed: dict[str, Exception] = dataclasses.field(default_factory=dict)
	warnings: list[HookFailed] = dataclasses.field(default_factory=list)


# -----------------------------------------------------------------------------
#
# UTILITIES
#
# -----------------------------------------------------------------------------


def nodeploy_util_output(message: str, quiet: bool = False) -> None:
	"""Print message to stdout unless quiet mode."""
	if not quiet and not _quiet:
		print(message)


def nodeploy_util_verbose(message: str) -> None:
	"""Print message only in verbose mode."""
	if _verbose:
		print(f"[verbose] {message}", file=sys.stderr)


def nodeploy_util_error(message: str) -> None:
	"""Print error message to stderr."""
	color = "" if _no_color else "\033[31m"
	reset = "" if _no_color else "\033[0m"
	print(f"{color}error:{reset} {message}", file=sys.stderr)


def nodeploy_util_warn(message: str) -> None:
	"""Print warning message to stderr."""
	color = "" if _no_color else "\033[33m"
	reset = "" if _no_color else "\033[0m"
	print(f"{color}warning:{reset} {message}", file=sys.stderr)


def nodeploy_util_set_log_target(packages_dir: Path) -> None:
	"""Set the packages directory shown as logging context."""
	global _log_target, _log_first_op
	_log_target = str(packages_dir)
	_log_first_op = True


def nodeploy_util_log_op(message: str, version: Optional[str] = None) -> None:
	"""Log an operation message with consistent format.

	Format: [TARGET] [TIME] MESSAGE [version=VERSION]
	- TARGET: shown when a packages directory is set
	- TIME: shown only for the first operation
	- VERSION: shown for package lifecycle operations
	"""
	global _log_first_op
	if _quiet:
		return

	parts = []
	if _log_target:
		parts.append(f"[{_log_target}]")
	if _log_first_op:
		parts.append(f"[{datetime.now().strftime('%H:%M:%S')}]")
		_log_first_op = False
	parts.append(message)
	if version:
		parts.append(f"version={version}")

	print(" ".join(parts))


def nodeploy_util_color(text: str, color: str) -> str:
	"""Colorize text if colors are enabled."""
	if _no_color:
		return text
	colors = {
		"red": "\033[31m",
		"green": "\033[32m",
		"yellow": "\033[33m",
		"cyan": "\033[36m",
		"bold": "\033[1m",
		"reset": "\033[0m",
	}
	return f"{colors.get(color, '')}{text}{colors.get('reset', '')}"


def nodeploy_util_format_size(size: float) -> str:
	"""Format byte size as human-readable string."""
	for unit in ["B", "KB", "MB", "GB", "TB"]:
		if size < 1024:
			return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}{unit}"
		size /= 1024
	return f"{size:.1f}PB"


def nodeploy_util_now() -> datetime:
	return datetime.now(timezone.utc)


def nodeploy_util_isoformat(when: datetime) -> str:
	return when.isoformat(timespec="microseconds")


def nodeploy_util_dir_size(path: Path) -> int:
	"""Total size of regular files below path, ignoring vanished entries."""
	total = 0
	for root, _dirs, files in os.walk(path):
		for name in files:
			try:
				st = os.lstat(os.path.join(root, name))
			except FileNotFoundError:
				continue
			if stat.S_ISREG(st.st_mode):
				total += st.st_size
	return total


def nodeploy_util_rmtree(path: Path) -> None:
	"""Remove a directory tree, making read-only entries writable first."""
	if not path.exists() and not path.is_symlink():
		return
	if path.is_symlink() or not path.is_dir():
		path.unlink()
		return
	for item in path.rglob("*"):
		if item.is_symlink():
			continue
		try:
			item.chmod(item.stat().st_mode | stat.S_IWUSR)
		except OSError:
			pass
	try:
		path.chmod(path.stat().st_mode | stat.S_IWUSR)
	except OSError:
		pass
	shutil.rmtree(path)


# -----------------------------------------------------------------------------
#
# CONFIGURATION
#
# -----------------------------------------------------------------------------


def nodeploy_config_load(
	path: Optional[Path], packages_dir: Path
) -> Config:
	"""Load configuration: explicit path -> $NODEPLOY_CONFIG -> packages dir.

	A missing default file yields defaults; a missing explicit file is an error.
	"""
	explicit = path or (Path(NODEPLOY_CONFIG) if NODEPLOY_CONFIG else None)
	conf_file = explicit or packages_dir / CONFIG_FILE
	config = Config(hook_timeout=NODEPLOY_HOOK_TIMEOUT)

	if not conf_file.is_file():
		if explicit:
			raise ConfigError(f"Configuration file not found: {conf_file}")
		return config

	nodeploy_util_verbose(f"Loading configuration from {conf_file}")
	try:
		data = tomllib.loads(conf_file.read_text())
	except tomllib.TOMLDecodeError as e:
		raise ConfigError(f"Invalid {conf_file}: {e}") from e

	config.path = conf_file
	return nodeploy_config_from_dict(data, config)


def nodeploy_config_from_dict(data: dict, config: Config) -> Config:
	"""Apply parsed TOML data onto config."""
	env = data.get("env", {})
	if not isinstance(env, dict):
		raise ConfigError("[env] must be a table")
	config.env = {str(k): str(v) for k, v in env.items()}

	sync = data.get("sync", {})
	if "mode" in sync:
		if sync["mode"] not in SYNC_MODES:
			raise ConfigError(
				f"Invalid sync mode '{sync['mode']}' (expected one of: {', '.join(SYNC_MODES)})"
			)
		config.sync_mode = sync["mode"]
	if "production" in sync:
		config.production = bool(sync["production"])

	hooks = data.get("hooks", {})
	if "timeout" in hooks:
		try:
			config.hook_timeout = int(hooks["timeout"])
		except (TypeError, ValueError) as e:
			raise ConfigError(f"Invalid hook timeout: {hooks['timeout']!r}") from e
	if "disabled" in hooks:
		disabled = hooks["disabled"]
		if isinstance(disabled, bool):
			disabled = list(HOOK_NAMES) if disabled else []
		elif isinstance(disabled, str):
			disabled = [n.strip() for n in disabled.split(",") if n.strip()]
		unknown = sorted(set(disabled) - set(HOOK_NAMES))
		if unknown:
			raise ConfigError(f"Unknown hook(s) in [hooks] disabled: {', '.join(unknown)}")
		config.disabled_hooks = frozenset(disabled)

	return config


# -----------------------------------------------------------------------------
#
# LOCK MANAGER
#
# -----------------------------------------------------------------------------


def nodeploy_process_is_running(pid: int) -> bool:
	"""Check if process with given PID is running."""
	try:
		os.kill(pid, 0)
		return True
	except ProcessLookupError:
		return False
	except PermissionError:
		return True


def _nodeploy_lock_read_holder(fd: int) -> Optional[int]:
	"""Return the PID recorded in the lock file if that process is alive."""
	try:
		content = os.pread(fd, 32, 0).decode("ascii", "replace").strip()
	except OSError:
		return None
	if not content.isdigit():
		return None
	pid = int(content)
	return pid if nodeploy_process_is_running(pid) else None


def nodeploy_lock_acquire(packages_dir: Path) -> LockHandle:
	"""Take the packages directory lock without waiting.

	The lock is a kernel flock: it disappears with the holding process, so a
	crashed command never leaves the directory locked. Descriptors from
	os.open are non-inheritable, hooks and npm never hold it.
	"""
	packages_dir.mkdir(parents=True, exist_ok=True)
	lock_path = packages_dir / LOCK_FILE
	fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
	try:
		fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
	except BlockingIOError:
		holder = _nodeploy_lock_read_holder(fd)
		os.close(fd)
		raise LockHeld(packages_dir, holder) from None
	except BaseException:
		os.close(fd)
		raise

	pid = os.getpid()
	os.ftruncate(fd, 0)
	os.pwrite(fd, f"{pid}\n".encode("ascii"), 0)
	nodeploy_util_verbose(f"Acquired lock {lock_path}")
	return LockHandle(packages_dir=packages_dir, path=lock_path, fd=fd, pid=pid)


def nodeploy_lock_release(handle: LockHandle) -> None:
	"""Release the lock. Safe to call more than once."""
	if handle.fd is None:
		return
	fd, handle.fd = handle.fd, None
	# The lock file itself stays: another process may already have it open.
	try:
		os.ftruncate(fd, 0)
		fcntl.flock(fd, fcntl.LOCK_UN)
	finally:
		os.close(fd)
	nodeploy_util_verbose(f"Released lock {handle.path}")


@contextlib.contextmanager
def nodeploy_lock(packages_dir: Path) -> Iterator[LockHandle]:
	"""Hold the packages directory lock for the duration of the block."""
	handle = nodeploy_lock_acquire(packages_dir)
	try:
		yield handle
	finally:
		nodeploy_lock_release(handle)


# -----------------------------------------------------------------------------
#
# METADATA STORE AND CURRENT POINTER
#
# -----------------------------------------------------------------------------


def nodeploy_store_get(
	packages_dir: Path, directory_name: str
) -> Optional[PackageRecord]:
	"""Read one package record, or None if absent, partial or corrupt."""
	if (
		not directory_name
		or directory_name.startswith(".")
		or "/" in directory_name
		or directory_name == CURRENT_LINK
	):
		return None
	path = packages_dir / directory_name
	if path.is_symlink() or not path.is_dir():
		return None

	try:
		data = json.loads((path / DESCRIPTOR_FILE).read_text())
	except (FileNotFoundError, NotADirectoryError):
		return None
	except (OSError, ValueError) as e:
		nodeploy_util_verbose(f"Skipping {directory_name}: unreadable descriptor ({e})")
		return None

	try:
		record = PackageRecord.from_dict(data, path)
	except (TypeError, ValueError) as e:
		nodeploy_util_verbose(f"Skipping {directory_name}: {e}")
		return None

	if record.directory_name != directory_name:
		nodeploy_util_verbose(
			f"Skipping {directory_name}: descriptor names {record.directory_name}"
		)
		return None
	return record


def nodeploy_store_list(packages_dir: Path) -> list[PackageRecord]:
	"""List valid package records, oldest install first."""
	try:
		entries = os.listdir(packages_dir)
	except FileNotFoundError:
		return []

	records = []
	for entry in entries:
		if entry.startswith(".") or entry == CURRENT_LINK:
			continue
		record = nodeploy_store_get(packages_dir, entry)
		if record is not None:
			records.append(record)

	records.sort(key=lambda r: (r.installed_at, r.directory_name))
	return records


def nodeploy_store_new_directory_name(
	packages_dir: Path, name: str, version: str, when: datetime
) -> tuple[str, datetime]:
	"""Pick an unused directory name for name@version installed at `when`.

	Returns the name and the (possibly bumped) timestamp it encodes.
	"""
	safe_name = name.replace("/", "+")
	while True:
		stamp = when.strftime("%Y%m%dT%H%M%S%fZ")
		candidate = f"{safe_name}@{version}_{stamp}"
		path = packages_dir / candidate
		if not path.exists() and not path.is_symlink():
			return candidate, when
		when += timedelta(microseconds=1)


def nodeploy_store_write_descriptor(record: PackageRecord, directory: Path) -> None:
	"""Write the record descriptor into directory atomically."""
	target = directory / DESCRIPTOR_FILE
	tmp = directory / f"{DESCRIPTOR_FILE}.tmp"
	data = record.to_dict()
	del data["path"]
	with open(tmp, "w") as f:
		json.dump(data, f, indent=2, sort_keys=True)
		f.write("\n")
		f.flush()
		os.fsync(f.fileno())
	os.replace(tmp, target)


def nodeploy_store_create(
	packages_dir: Path, record: PackageRecord, staged: Path
) -> PackageRecord:
	"""Publish a fully prepared staged directory as an installed package.

	The descriptor is written into the staged directory first, then a single
	rename moves it into the packages directory. Listings never see a
	package without its descriptor.
	"""
	final = packages_dir / record.directory_name
	if final.exists() or final.is_symlink():
		raise FileExistsError(f"Package directory already exists: {final}")

	record = dataclasses.replace(record, path=final)
	nodeploy_store_write_descriptor(record, staged)
	os.rename(staged, final)
	nodeploy_util_verbose(f"Published {final}")
	return record


def nodeploy_store_touch_used(record: PackageRecord) -> PackageRecord:
	"""Record an activation time on the package descriptor."""
	record = dataclasses.replace(
		record, used_at=nodeploy_util_isoformat(nodeploy_util_now())
	)
	nodeploy_store_write_descriptor(record, record.path)
	return record


def nodeploy_store_retire(packages_dir: Path, directory_name: str) -> Path:
	"""Move a package out of the packages directory in one rename.

	Returns its location under the trash directory.
	"""
	trash_dir = packages_dir / TRASH_DIR
	trash_dir.mkdir(exist_ok=True)
	trashed = trash_dir / f"{directory_name}.{uuid.uuid4().hex[:8]}"
	os.rename(packages_dir / directory_name, trashed)
	nodeploy_util_verbose(f"Retired {directory_name} to {trashed}")
	return trashed


def nodeploy_store_remove(packages_dir: Path, directory_name: str) -> None:
	"""Remove an installed package and its record."""
	trashed = nodeploy_store_retire(packages_dir, directory_name)
	nodeploy_util_rmtree(trashed)


def nodeploy_store_purge(packages_dir: Path) -> None:
	"""Delete leftovers of interrupted operations. Call under the lock."""
	for area in (STAGING_DIR, TRASH_DIR):
		area_dir = packages_dir / area
		if not area_dir.is_dir():
			continue
		for item in area_dir.iterdir():
			nodeploy_util_verbose(f"Purging leftover {item}")
			nodeploy_util_rmtree(item)
	for item in packages_dir.glob(f".{CURRENT_LINK}.*.tmp"):
		nodeploy_util_verbose(f"Purging leftover {item}")
		item.unlink()


def nodeploy_store_get_current_name(packages_dir: Path) -> Optional[str]:
	"""Return the directory name the current pointer names, if any."""
	try:
		target = os.readlink(packages_dir / CURRENT_LINK)
	except FileNotFoundError:
		return None
	except OSError as e:
		nodeploy_util_warn(f"{packages_dir / CURRENT_LINK} is not a symlink: {e}")
		return None
	return Path(target).name


def nodeploy_store_get_current(packages_dir: Path) -> Optional[PackageRecord]:
	"""Return the current package record, if any."""
	directory_name = nodeploy_store_get_current_name(packages_dir)
	if directory_name is None:
		return None
	return nodeploy_store_get(packages_dir, directory_name)


def nodeploy_store_set_current(packages_dir: Path, directory_name: str) -> None:
	"""Point `current` at directory_name with one atomic replace."""
	if nodeploy_store_get(packages_dir, directory_name) is None:
		raise NotFound(directory_name)
	link = packages_dir / CURRENT_LINK
	tmp = packages_dir / f".{CURRENT_LINK}.{os.getpid()}.tmp"
	if tmp.exists() or tmp.is_symlink():
		tmp.unlink()
	os.symlink(directory_name, tmp)
	os.replace(tmp, link)
	nodeploy_util_verbose(f"current -> {directory_name}")


# -----------------------------------------------------------------------------
#
# SOURCES
#
# -----------------------------------------------------------------------------


def nodeploy_source_kind(source: str) -> str:
	"""Classify a source: 'git', 'http', 'archive' or 'directory'."""
	if source.startswith(("git+", "git@", "git://")):
		return "git"
	if re.match(r"^(https?|ssh)://[^#]+\.git(#.*)?$", source):
		return "git"
	if source.startswith(("http://", "https://")):
		return "http"

	path = Path(source).expanduser()
	if path.is_dir():
		return "directory"
	if path.is_file():
		return "archive"
	raise SourceError(f"Package source not found: {source}")


def nodeploy_source_stage(
	source: str,
	staging_root: Path,
	credentials: Optional[tuple[str, str]] = None,
) -> Path:
	"""Fetch or extract source into staging_root/package and return that path."""
	dest = staging_root / "package"
	kind = nodeploy_source_kind(source)
	nodeploy_util_verbose(f"Staging {kind} source {source} into {dest}")

	if kind == "directory":
		try:
			shutil.copytree(
				Path(source).expanduser(),
				dest,
				symlinks=True,
				ignore=shutil.ignore_patterns(".git"),
			)
		except (OSError, shutil.Error) as e:
			raise SourceError(f"Cannot copy {source}: {e}") from e
	elif kind == "archive":
		nodeploy_source_extract(Path(source).expanduser(), dest)
	elif kind == "http":
		archive = nodeploy_source_download(source, staging_root, credentials)
		nodeploy_source_extract(archive, dest)
		archive.unlink()
	else:
		nodeploy_source_clone(source, dest, credentials)

	if not dest.is_dir():
		raise SourceError(f"Source {source} produced no package directory")
	return dest


def nodeploy_source_extract(archive: Path, dest: Path) -> None:
	"""Extract archive into dest, unwrapping a single top-level directory.

	npm tarballs wrap their contents in `package/`.
	"""
	unpack = dest.parent / f"{dest.name}.extract"
	unpack.mkdir(parents=True)
	try:
		if archive.name.lower().endswith(".zip"):
			with zipfile.ZipFile(archive) as zf:
				zf.extractall(unpack)
		else:
			with tarfile.open(archive, "r:*") as tar:
				tar.extractall(unpack, filter="data")
	except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
		raise SourceError(f"Cannot extract {archive.name}: {e}") from e

	contents = list(unpack.iterdir())
	if (
		len(contents) == 1
		and contents[0].is_dir()
		and not (unpack / MANIFEST_FILE).exists()
	):
		os.rename(contents[0], dest)
		unpack.rmdir()
	else:
		os.rename(unpack, dest)


def nodeploy_source_download(
	url: str, staging_root: Path, credentials: Optional[tuple[str, str]] = None
) -> Path:
	"""Download an archive URL into staging_root."""
	filename = Path(urlsplit(url).path).name
	if not filename.lower().endswith(ARCHIVE_EXTENSIONS):
		filename = "package.tgz"
	archive = staging_root / filename

	nodeploy_util_log_op(f"Downloading {url}")
	auth = tuple(credentials) if credentials else None
	try:
		with requests.get(
			url, stream=True, auth=auth, timeout=NODEPLOY_FETCH_TIMEOUT
		) as response:
			response.raise_for_status()
			with open(archive, "wb") as f:
				for chunk in response.iter_content(chunk_size=65536):
					if chunk:
						f.write(chunk)
	except requests.RequestException as e:
		raise SourceError(f"Cannot download {url}: {e}") from e
	return archive


def _nodeploy_source_git_url(
	url: str, credentials: Optional[tuple[str, str]]
) -> str:
	"""Embed credentials into an http(s) git URL."""
	if not credentials:
		return url
	parts = urlsplit(url)
	if parts.scheme not in ("http", "https"):
		return url
	user, password = credentials
	netloc = f"{quote(user, safe='')}:{quote(password, safe='')}@{parts.hostname}"
	if parts.port:
		netloc += f":{parts.port}"
	return urlunsplit(parts._replace(netloc=netloc))


def nodeploy_source_clone(
	source: str, dest: Path, credentials: Optional[tuple[str, str]] = None
) -> None:
	"""Shallow clone a git source (optionally `#ref`) into dest."""
	url, _, ref = source.partition("#")
	if url.startswith("git+"):
		url = url[len("git+"):]

	cmd = ["git", "clone", "--depth", "1"]
	if ref:
		cmd += ["--branch", ref]
	cmd += [_nodeploy_source_git_url(url, credentials), str(dest)]

	nodeploy_util_log_op(f"Cloning {url}" + (f" at {ref}" if ref else ""))
	try:
		result = subprocess.run(
			cmd,
			capture_output=True,
			text=True,
			env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
		)
	except FileNotFoundError as e:
		raise SourceError("Cannot clone: git is not installed") from e

	if result.returncode != 0:
		stderr = result.stderr.strip()
		if credentials:
			stderr = stderr.replace(credentials[1], "***")
		raise SourceError(f"Cannot clone {url} (exit code {result.returncode})\n{stderr}")

	nodeploy_util_rmtree(dest / ".git")


# -----------------------------------------------------------------------------
#
# MANIFEST
#
# -----------------------------------------------------------------------------


def nodeploy_manifest_load(package_path: Path) -> dict[str, Any]:
	"""Load package.json from a package directory."""
	manifest_file = package_path / MANIFEST_FILE
	try:
		data = json.loads(manifest_file.read_text())
	except FileNotFoundError as e:
		raise ManifestError(f"Missing {MANIFEST_FILE} in package") from e
	except (OSError, ValueError) as e:
		raise ManifestError(f"Invalid {MANIFEST_FILE}: {e}") from e
	if not isinstance(data, dict):
		raise ManifestError(f"Invalid {MANIFEST_FILE}: not an object")
	return data


def nodeploy_manifest_fields(manifest: dict[str, Any]) -> dict[str, Any]:
	"""Extract and validate the record fields a manifest provides."""
	name = manifest.get("name")
	if not isinstance(name, str) or not name or re.search(r"\s", name):
		raise ManifestError(f"Invalid package name: {name!r}")

	version = manifest.get("version")
	try:
		Version(str(version))
	except ValueError as e:
		raise ManifestError(f"Invalid version for {name}: {version!r}") from e

	scripts = manifest.get("scripts") or {}
	if not isinstance(scripts, dict):
		raise ManifestError(f"Invalid scripts for {name}: expected an object")

	compatibility = (manifest.get("engines") or {}).get("nodeploy")
	if compatibility is not None:
		try:
			NpmSpec(str(compatibility))
		except ValueError as e:
			raise ManifestError(
				f"Invalid engines.nodeploy range for {name}: {compatibility!r}"
			) from e
		compatibility = str(compatibility)

	settings = manifest.get("nodeploy") or {}
	env = settings.get("env") or {}
	if not isinstance(env, dict):
		raise ManifestError(f"Invalid nodeploy.env for {name}: expected an object")

	hooks_dir = settings.get("hooks") or DEFAULT_HOOKS_DIR
	if Path(hooks_dir).is_absolute() or ".." in Path(hooks_dir).parts:
		raise ManifestError(f"Invalid nodeploy.hooks for {name}: {hooks_dir!r}")

	return {
		"name": name,
		"version": str(version),
		"scripts": {str(k): str(v) for k, v in scripts.items()},
		"compatibility": compatibility,
		"env": {str(k): str(v) for k, v in env.items()},
		"hooks_dir": hooks_dir,
	}


def nodeploy_manifest_check_engine(name: str, compatibility: Optional[str]) -> None:
	"""Raise IncompatibleEngine unless this nodeploy satisfies the range."""
	if not compatibility:
		return
	if Version(NODEPLOY_VERSION) not in NpmSpec(compatibility):
		raise IncompatibleEngine(name, compatibility, NODEPLOY_VERSION)


def nodeploy_manifest_has_dependencies(
	manifest: dict[str, Any], production: bool = True
) -> bool:
	keys = ["dependencies", "optionalDependencies"]
	if not production:
		keys.append("devDependencies")
	return any(manifest.get(k) for k in keys)


# -----------------------------------------------------------------------------
#
# DEPENDENCY SYNC
#
# -----------------------------------------------------------------------------


def nodeploy_sync_commands(
	project_dir: Path, mode: str, production: bool = True
) -> list[list[str]]:
	"""Build the npm command lines for a sync mode.

	preferCi uses `npm ci` when a lockfile is present, `npm install` otherwise.
	"""
	if mode not in SYNC_MODES:
		raise ConfigError(
			f"Invalid sync mode '{mode}' (expected one of: {', '.join(SYNC_MODES)})"
		)
	omit = ["--omit=dev"] if production else []

	if mode == "preferCi":
		has_lockfile = any((project_dir / f).exists() for f in NPM_LOCKFILES)
		mode = "ci" if has_lockfile else "install"

	if mode == "ci":
		return [[NODEPLOY_NPM, "ci", *omit]]
	return [[NODEPLOY_NPM, "install", *omit], [NODEPLOY_NPM, "prune", *omit]]


def nodeploy_sync_run(
	project_dir: Path,
	mode: str,
	production: bool = True,
	env: Optional[dict[str, str]] = None,
) -> None:
	"""Install the project's dependencies with npm."""
	for cmd in nodeploy_sync_commands(project_dir, mode, production):
		nodeploy_util_verbose(f"exec in {project_dir}: {shlex.join(cmd)}")
		try:
			result = subprocess.run(
				cmd, cwd=project_dir, capture_output=True, text=True, env=env
			)
		except FileNotFoundError as e:
			raise DependencySyncFailed(cmd, 127, f"Command not found: {cmd[0]}") from e
		if result.returncode != 0:
			raise DependencySyncFailed(cmd, result.returncode, result.stderr)


# -----------------------------------------------------------------------------
#
# HOOKS
#
# -----------------------------------------------------------------------------


def nodeploy_hooks_parse_disabled(value: Any, command: str) -> frozenset[str]:
	"""Normalize a disabled-hooks option for command.

	True disables every hook the command runs, False/None none; otherwise a
	comma separated string or an iterable of names is validated.
	"""
	allowed = COMMAND_HOOKS[command]
	if value is None or value is False:
		return frozenset()
	if value is True:
		return frozenset(allowed)
	if isinstance(value, str):
		names = {n.strip() for n in value.split(",")}
	else:
		names = {str(n).strip() for n in value}
	names.discard("")

	unknown = sorted(names - set(allowed))
	if unknown:
		raise InvalidHookName(unknown, command, allowed)
	return frozenset(names)


def nodeploy_hooks_context(
	action: str, packages_dir: Path, config: Config, disabled: frozenset[str]
) -> HookContext:
	"""Combine command-line and configured disabled hooks for action."""
	configured = config.disabled_hooks & set(COMMAND_HOOKS[action])
	return HookContext(
		action=action,
		packages_dir=packages_dir,
		config=config,
		disabled=frozenset(disabled | configured),
	)


def nodeploy_hooks_find(record: PackageRecord, hook: str, base: Path) -> Optional[Path]:
	"""Locate the script for hook inside base, if the package ships one."""
	hooks_dir = base / record.hooks_dir
	for name in (hook, f"{hook}.sh"):
		script = hooks_dir / name
		if script.is_file():
			return script
	return None


def nodeploy_hooks_env(
	record: PackageRecord, context: HookContext, hook: str = ""
) -> dict[str, str]:
	"""Environment for hooks and tasks of record."""
	env = os.environ.copy()
	env.update(context.config.env)
	env.update(record.env)
	env.update(
		{
			"NODEPLOY_ACTION": context.action,
			"NODEPLOY_HOOK": hook,
			"NODEPLOY_PACKAGE_NAME": record.name,
			"NODEPLOY_PACKAGE_VERSION": record.version,
			"NODEPLOY_PACKAGE_DIR": str(record.path),
			"NODEPLOY_DIRECTORY_NAME": record.directory_name,
			"NODEPLOY_PACKAGES_DIR": str(context.packages_dir),
		}
	)
	return env


def nodeploy_hooks_run(
	hook: str,
	record: PackageRecord,
	context: HookContext,
	cwd: Optional[Path] = None,
) -> None:
	"""Run a lifecycle hook of record, raising HookFailed on failure.

	cwd defaults to the package path; the script is looked up there too.
	"""
	if hook not in HOOK_NAMES:
		raise InvalidHookName([hook], context.action, HOOK_NAMES)
	if hook in context.disabled:
		nodeploy_util_verbose(f"Hook {hook} disabled")
		return

	workdir = cwd or record.path
	script = nodeploy_hooks_find(record, hook, workdir)
	if script is None:
		nodeploy_util_verbose(f"No {hook} hook in {record.directory_name}")
		return

	cmd = [str(script)] if os.access(script, os.X_OK) else ["sh", str(script)]
	timeout = context.config.hook_timeout
	nodeploy_util_log_op(f"Running {hook} hook for {record.name}", version=record.version)

	try:
		result = subprocess.run(
			cmd,
			cwd=workdir,
			env=nodeploy_hooks_env(record, context, hook),
			capture_output=True,
			text=True,
			timeout=timeout if timeout > 0 else None,
		)
	except subprocess.TimeoutExpired as e:
		raise HookFailed(
			hook, record.directory_name, None, f"Timed out after {timeout}s"
		) from e
	except OSError as e:
		raise HookFailed(hook, record.directory_name, None, str(e)) from e

	for line in result.stdout.splitlines():
		nodeploy_util_verbose(f"{hook}: {line}")
	if result.returncode != 0:
		raise HookFailed(hook, record.directory_name, result.returncode, result.stderr)


def _nodeploy_hooks_run_post(
	hook: str,
	record: PackageRecord,
	context: HookContext,
	warnings: list[HookFailed],
	cwd: Optional[Path] = None,
) -> None:
	"""Run a post hook: failures become warnings, the step already committed."""
	try:
		nodeploy_hooks_run(hook, record, context, cwd=cwd)
	except HookFailed as e:
		nodeploy_util_warn(str(e))
		warnings.append(e)


# -----------------------------------------------------------------------------
#
# TARGET RESOLUTION
#
# -----------------------------------------------------------------------------


def _nodeploy_resolve_prefer(
	candidates: list[PackageRecord], current: Optional[str]
) -> str:
	"""The current candidate if there is one, else the latest installed."""
	for record in candidates:
		if record.directory_name == current:
			return record.directory_name
	latest = max(candidates, key=lambda r: (r.installed_at, r.directory_name))
	return latest.directory_name


def _nodeploy_resolve_version_prefix(prefix: str, version: str) -> bool:
	"""Whether prefix names leading components of version: `1.2` matches
	`1.2.10` but `1.2.1` does not."""
	prefix = prefix.rstrip(".")
	return bool(prefix) and version.startswith(prefix + ".")


def nodeploy_resolve(
	target: Optional[str],
	packages_dir: Path,
	records: Optional[list[PackageRecord]] = None,
) -> str:
	"""Resolve a user-supplied target to an installed directory name.

	Accepted forms, tried in order:
	- `@current` (or empty): the current package
	- an exact directory name
	- `name@version`, or `name@prefix` when one version matches the prefix
	- `name`: its current instance, else its latest install
	- a unique prefix of a directory name
	"""
	if records is None:
		records = nodeploy_store_list(packages_dir)
	current = nodeploy_store_get_current_name(packages_dir)
	by_directory = {r.directory_name: r for r in records}

	if not target or target == CURRENT_TARGET:
		if current and current in by_directory:
			return current
		raise NotFound(CURRENT_TARGET, "no current package")

	if target in by_directory:
		return target

	name, sep, version = target.rpartition("@")
	if sep and name:
		# Past the `_` separator the target names a directory, not a version
		version, stamp_sep, _stamp = version.partition("_")
		same_name = [
			r for r in records if name in (r.name, r.name.replace("/", "+"))
		]
		if same_name and not stamp_sep:
			exact = [r for r in same_name if r.version == version]
			if exact:
				return _nodeploy_resolve_prefer(exact, current)
			prefixed = [
				r for r in same_name if _nodeploy_resolve_version_prefix(version, r.version)
			]
			if len({r.version for r in prefixed}) == 1:
				return _nodeploy_resolve_prefer(prefixed, current)
			if prefixed:
				raise Ambiguous(target, sorted(r.directory_name for r in prefixed))
			raise NotFound(target)
	else:
		same_name = [r for r in records if r.name == target]
		if same_name:
			return _nodeploy_resolve_prefer(same_name, current)

	matches = sorted(d for d in by_directory if d.startswith(target))
	if len(matches) == 1:
		return matches[0]
	if matches:
		raise Ambiguous(target, matches)
	raise NotFound(target)


# -----------------------------------------------------------------------------
#
# DEPLOYMENT ENGINE
#
# -----------------------------------------------------------------------------


def nodeploy_engine_install(
	packages_dir: Path,
	source: str,
	options: Optional[InstallOptions] = None,
	config: Optional[Config] = None,
) -> OperationResult:
	"""Install a package from source, then use it unless options.use is off.

	1. Lock
	2. Stage source, read its manifest
	3. Check engine compatibility and duplicates
	4. preinstall on the staged directory
	5. Sync dependencies
	6. Publish (commit point)
	7. Use
	8. postinstall
	"""
	options = options or InstallOptions()
	config = config or nodeploy_config_load(None, packages_dir)
	disabled = nodeploy_hooks_parse_disabled(options.disabled_hooks, "install")
	sync_mode = options.sync_mode or config.sync_mode
	if sync_mode not in SYNC_MODES:
		raise ConfigError(
			f"Invalid sync mode '{sync_mode}' (expected one of: {', '.join(SYNC_MODES)})"
		)
	context = nodeploy_hooks_context("install", packages_dir, config, disabled)

	with nodeploy_lock(packages_dir):
		nodeploy_store_purge(packages_dir)
		record = _nodeploy_engine_publish(packages_dir, source, options, sync_mode, context)

		warnings: list[HookFailed] = []
		if options.use:
			result = _nodeploy_engine_use_locked(packages_dir, record.directory_name, context)
			record = result.record or record
			warnings.extend(result.warnings)

		_nodeploy_hooks_run_post("postinstall", record, context, warnings)
		return OperationResult(record=record, warnings=warnings)


def _nodeploy_engine_publish(
	packages_dir: Path,
	source: str,
	options: InstallOptions,
	sync_mode: str,
	context: HookContext,
) -> PackageRecord:
	"""Stage, check, run preinstall, sync and publish. Call under the lock.

	Nothing but the staging area is touched before the final rename, and the
	staging area is discarded on every path.
	"""
	staging_root = packages_dir / STAGING_DIR / uuid.uuid4().hex
	staging_root.mkdir(parents=True)
	try:
		nodeploy_util_log_op(f"Staging {source}")
		staged = nodeploy_source_stage(source, staging_root, options.credentials)
		manifest = nodeploy_manifest_load(staged)
		fields = nodeploy_manifest_fields(manifest)
		name, version = fields["name"], fields["version"]
		nodeploy_manifest_check_engine(name, fields["compatibility"])

		existing = [
			r
			for r in nodeploy_store_list(packages_dir)
			if r.name == name and r.version == version
		]
		if existing and not options.force:
			raise AlreadyInstalled(name, version, existing[-1].directory_name)

		directory_name, installed_at = nodeploy_store_new_directory_name(
			packages_dir, name, version, nodeploy_util_now()
		)
		record = PackageRecord(
			directory_name=directory_name,
			path=staged,
			installed_at=nodeploy_util_isoformat(installed_at),
			**fields,
		)

		nodeploy_hooks_run("preinstall", record, context)

		if nodeploy_manifest_has_dependencies(manifest, context.config.production):
			nodeploy_util_log_op(f"Syncing dependencies ({sync_mode})", version=version)
			nodeploy_sync_run(
				staged,
				sync_mode,
				context.config.production,
				env=nodeploy_hooks_env(record, context),
			)
		else:
			nodeploy_util_verbose(f"{name} declares no dependencies")

		record = nodeploy_store_create(packages_dir, record, staged)
		nodeploy_util_log_op(f"Installed {name} as {directory_name}", version=version)
		return record
	finally:
		nodeploy_util_rmtree(staging_root)
		staging_dir = staging_root.parent
		if staging_dir.is_dir() and not any(staging_dir.iterdir()):
			staging_dir.rmdir()


def _nodeploy_engine_use_locked(
	packages_dir: Path, directory_name: str, context: HookContext
) -> OperationResult:
	"""Make directory_name current. Call under the lock."""
	record = nodeploy_store_get(packages_dir, directory_name)
	if record is None:
		raise NotFound(directory_name)

	if nodeploy_store_get_current_name(packages_dir) == directory_name:
		nodeploy_util_log_op(f"{directory_name} is already current", version=record.version)
		return OperationResult(record=record)

	nodeploy_manifest_check_engine(record.name, record.compatibility)
	nodeploy_hooks_run("preuse", record, context)

	nodeploy_store_set_current(packages_dir, directory_name)
	record = nodeploy_store_touch_used(record)
	nodeploy_util_log_op(f"Using {record.name} from {directory_name}", version=record.version)

	warnings: list[HookFailed] = []
	_nodeploy_hooks_run_post("postuse", record, context, warnings)
	return OperationResult(record=record, warnings=warnings)


def nodeploy_engine_use(
	packages_dir: Path,
	target: Optional[str],
	options: Optional[UseOptions] = None,
	config: Optional[Config] = None,
) -> OperationResult:
	"""Resolve target and make it the current package."""
	options = options or UseOptions()
	config = config or nodeploy_config_load(None, packages_dir)
	disabled = nodeploy_hooks_parse_disabled(options.disabled_hooks, "use")
	context = nodeploy_hooks_context("use", packages_dir, config, disabled)

	with nodeploy_lock(packages_dir):
		nodeploy_store_purge(packages_dir)
		directory_name = nodeploy_resolve(target, packages_dir)
		return _nodeploy_engine_use_locked(packages_dir, directory_name, context)


def _nodeploy_engine_uninstall_locked(
	packages_dir: Path, directory_name: str, context: HookContext
) -> OperationResult:
	"""Remove one package that is not current. Call under the lock.

	The package leaves the packages directory in one rename (commit point);
	postuninstall runs from its trash location before it is deleted.
	"""
	record = nodeploy_store_get(packages_dir, directory_name)
	if record is None:
		raise NotFound(directory_name)
	if nodeploy_store_get_current_name(packages_dir) == directory_name:
		raise GuardViolation(directory_name)

	nodeploy_hooks_run("preuninstall", record, context)

	trashed = nodeploy_store_retire(packages_dir, directory_name)
	nodeploy_util_log_op(f"Uninstalled {directory_name}", version=record.version)

	warnings: list[HookFailed] = []
	try:
		# The hook sees the package where it still exists
		retired = dataclasses.replace(record, path=trashed)
		_nodeploy_hooks_run_post("postuninstall", retired, context, warnings)
	finally:
		nodeploy_util_rmtree(trashed)
	return OperationResult(record=record, warnings=warnings)


def nodeploy_engine_uninstall(
	packages_dir: Path,
	target: Optional[str],
	options: Optional[UninstallOptions] = None,
	config: Optional[Config] = None,
) -> OperationResult:
	"""Resolve target and uninstall it."""
	options = options or UninstallOptions()
	config = config or nodeploy_config_load(None, packages_dir)
	disabled = nodeploy_hooks_parse_disabled(options.disabled_hooks, "uninstall")
	context = nodeploy_hooks_context("uninstall", packages_dir, config, disabled)

	with nodeploy_lock(packages_dir):
		nodeploy_store_purge(packages_dir)
		directory_name = nodeploy_resolve(target, packages_dir)
		return _nodeploy_engine_uninstall_locked(packages_dir, directory_name, context)


def nodeploy_engine_clean(
	packages_dir: Path,
	options: Optional[CleanOptions] = None,
	config: Optional[Config] = None,
) -> CleanResult:
	"""Uninstall every package except the current one.

	The `keep` most recently installed non-current packages are spared. A
	failure on one package is recorded and the others are still processed.
	"""
	options = options or CleanOptions()
	config = config or nodeploy_config_load(None, packages_dir)
	disabled = nodeploy_hooks_parse_disabled(options.disabled_hooks, "clean")
	context = nodeploy_hooks_context("clean", packages_dir, config, disabled)
	result = CleanResult()

	with nodeploy_lock(packages_dir):
		nodeploy_store_purge(packages_dir)
		current = nodeploy_store_get_current_name(packages_dir)
		candidates = [
			r for r in reversed(nodeploy_store_list(packages_dir))
			if r.directory_name != current
		]
		keep = max(options.keep, 0)
		result.kept = [r.directory_name for r in candidates[:keep]]

		for record in candidates[keep:]:
			try:
				outcome = _nodeploy_engine_uninstall_locked(
					packages_dir, record.directory_name, context
				)
			except (NodeployError, OSError) as e:
				nodeploy_util_error(f"{record.directory_name}: {e}")
				result.failed[record.directory_name] = e
				continue
			result.removed.append(record.directory_name)
			result.warnings.extend(outcome.warnings)

	return result


# -----------------------------------------------------------------------------
#
# TASKS
#
# -----------------------------------------------------------------------------


def nodeploy_task_run(
	packages_dir: Path,
	task: str,
	args: Optional[list[str]] = None,
	config: Optional[Config] = None,
) -> int:
	"""Run a script of the current package. Returns its exit code."""
	config = config or nodeploy_config_load(None, packages_dir)
	record = nodeploy_store_get_current(packages_dir)
	if record is None:
		raise NotFound(CURRENT_TARGET, "no current package")
	if task not in record.scripts:
		raise UnknownTask(task, sorted(record.scripts))

	command = record.scripts[task]
	if args:
		command = f"{command} {shlex.join(args)}"

	env = nodeploy_hooks_env(record, HookContext("run", packages_dir, config))
	# Like npm, expose the package's own binaries to its scripts
	env["PATH"] = os.pathsep.join(
		[str(record.path / "node_modules" / ".bin"), env.get("PATH", "")]
	)

	nodeploy_util_log_op(f"Running {task} of {record.name}", version=record.version)
	nodeploy_util_verbose(f"exec in {record.path}: {command}")
	try:
		result = subprocess.run(["sh", "-c", command], cwd=record.path, env=env)
	except KeyboardInterrupt:
		return 130
	return result.returncode


# -----------------------------------------------------------------------------
#
# CLI IMPLEMENTATION
#
# -----------------------------------------------------------------------------


class NodeployArgumentParser(argparse.ArgumentParser):
	"""ArgumentParser with improved error messages."""

	def error(self, message: str) -> NoReturn:
		"""Print error with available commands."""
		self.print_usage(sys.stderr)

		commands = [
			"install",
			"list",
			"ll",
			"current",
			"info",
			"use",
			"uninstall",
			"clean",
			"run",
		]

		sys.stderr.write(f"\n{self.prog}: error: {message}\n")
		sys.stderr.write(f"\nAvailable commands: {', '.join(commands)}\n")
		sys.stderr.write(
			f"Run '{self.prog} COMMAND --help' for command-specific help.\n"
		)
		sys.exit(2)


def _nodeploy_add_hook_options(parser: argparse.ArgumentParser, command: str) -> None:
	hooks = ", ".join(COMMAND_HOOKS[command])
	parser.add_argument(
		"--disable-hooks",
		metavar="HOOKS",
		help=f"Comma separated hooks to skip ({hooks})",
	)
	parser.add_argument(
		"--no-hooks", action="store_true", help="Skip every hook of this command"
	)


def nodeploy_build_parser() -> argparse.ArgumentParser:
	"""Build argument parser with all subcommands."""
	parser = NodeployArgumentParser(
		prog="nodeploy",
		description="Install, activate and remove versioned Node application packages",
	)

	# Global options
	parser.add_argument(
		"-d",
		"--packages-dir",
		default=NODEPLOY_PACKAGES_DIR,
		help=f"Packages directory (default: {NODEPLOY_PACKAGES_DIR})",
	)
	parser.add_argument("-c", "--config", help="Configuration file")
	parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
	parser.add_argument(
		"-q", "--quiet", action="store_true", help="Suppress non-error output"
	)
	parser.add_argument(
		"--no-color", action="store_true", help="Disable colored output"
	)
	parser.add_argument("--version", action="store_true", help="Show version")

	subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

	# install
	p_install = subparsers.add_parser(
		"install", help="Install a package from a directory, archive, URL or git"
	)
	p_install.add_argument("source", help="Package source")
	p_install.add_argument(
		"-f", "--force", action="store_true", help="Install even if the version exists"
	)
	p_install.add_argument(
		"--sync-mode",
		choices=SYNC_MODES,
		help="Dependency sync mode (default: from configuration, else preferCi)",
	)
	p_install.add_argument(
		"--no-use", action="store_true", help="Do not make the package current"
	)
	p_install.add_argument("-u", "--user", help="User for the package source")
	p_install.add_argument(
		"-p",
		"--password",
		default=os.environ.get("NODEPLOY_PASSWORD"),
		help="Password for the package source (default: $NODEPLOY_PASSWORD)",
	)
	_nodeploy_add_hook_options(p_install, "install")

	# list
	p_list = subparsers.add_parser("list", aliases=["ls"], help="List installed packages")
	p_list.add_argument("pattern", nargs="?", help="Package name glob")
	p_list.add_argument("--json", action="store_true", help="JSON output")

	p_ll = subparsers.add_parser("ll", help="List installed packages with details")
	p_ll.add_argument("pattern", nargs="?", help="Package name glob")

	# current
	p_current = subparsers.add_parser(
		"current", aliases=["cur"], help="Show the current package"
	)
	p_current.add_argument("--json", action="store_true", help="JSON output")

	# info
	p_info = subparsers.add_parser("info", help="Show package details")
	p_info.add_argument(
		"package", nargs="?", default=CURRENT_TARGET, help="Package (default: current)"
	)
	p_info.add_argument("--json", action="store_true", help="JSON output")

	# use
	p_use = subparsers.add_parser("use", help="Make a package current")
	p_use.add_argument("package", help="Package name, name@version or directory")
	_nodeploy_add_hook_options(p_use, "use")

	# uninstall
	p_uninstall = subparsers.add_parser(
		"uninstall", aliases=["remove", "rm"], help="Remove an installed package"
	)
	p_uninstall.add_argument("package", help="Package name, name@version or directory")
	_nodeploy_add_hook_options(p_uninstall, "uninstall")

	# clean
	p_clean = subparsers.add_parser(
		"clean", help="Remove every package except the current one"
	)
	p_clean.add_argument(
		"-k",
		"--keep",
		type=int,
		default=0,
		help="Keep the N most recent non-current packages (default: 0)",
	)
	_nodeploy_add_hook_options(p_clean, "clean")

	# run
	p_run = subparsers.add_parser("run", help="Run a script of the current package")
	p_run.add_argument("script", nargs="?", help="Script name (lists scripts if omitted)")
	p_run.add_argument("args", nargs=argparse.REMAINDER, help="Script arguments")

	return parser


def _nodeploy_disabled_hooks(args: argparse.Namespace) -> Any:
	return True if args.no_hooks else args.disable_hooks


def _nodeploy_context(args: argparse.Namespace) -> tuple[Path, Config]:
	packages_dir = Path(args.packages_dir).expanduser()
	nodeploy_util_set_log_target(packages_dir)
	config = nodeploy_config_load(
		Path(args.config).expanduser() if args.config else None, packages_dir
	)
	return packages_dir, config


def _nodeploy_print_record(record: PackageRecord, current: Optional[str]) -> None:
	status = "current" if record.directory_name == current else "installed"
	print(f"name:         {record.name}")
	print(f"version:      {record.version}")
	print(f"directory:    {record.directory_name}")
	print(f"path:         {record.path}")
	print(f"status:       {status}")
	print(f"installed:    {record.installed_at}")
	print(f"used:         {record.used_at or '-'}")
	if record.compatibility:
		print(f"requires:     nodeploy {record.compatibility}")
	if record.scripts:
		print("scripts:")
		for name, command in sorted(record.scripts.items()):
			print(f"  {name:<12} {command}")
	if record.env:
		print("env:")
		for key, value in sorted(record.env.items()):
			print(f"  {key}={value}")


# --- Command Handlers ---


def nodeploy_cmd_handler_install(args: argparse.Namespace) -> int:
	"""Handle 'install' command."""
	try:
		packages_dir, config = _nodeploy_context(args)
		credentials = None
		if args.user:
			credentials = (args.user, args.password or "")
		options = InstallOptions(
			force=args.force,
			disabled_hooks=_nodeploy_disabled_hooks(args),
			sync_mode=args.sync_mode,
			use=not args.no_use,
			credentials=credentials,
		)
		nodeploy_engine_install(packages_dir, args.source, options, config)
		return 0
	except Exception as e:
		nodeploy_util_error(str(e))
		return 1


def nodeploy_cmd_handler_list(args: argparse.Namespace, long_format: bool = False) -> int:
	"""Handle 'list', 'ls' and 'll' commands."""
	try:
		packages_dir = Path(args.packages_dir).expanduser()
		records = nodeploy_store_list(packages_dir)
		current = nodeploy_store_get_current_name(packages_dir)
		if args.pattern:
			records = [r for r in records if fnmatch.fnmatch(r.name, args.pattern)]

		if getattr(args, "json", False):
			data = []
			for r in records:
				item = r.to_dict()
				item["current"] = r.directory_name == current
				data.append(item)
			print(json.dumps(data, indent=2))
			return 0

		if not records:
			nodeploy_util_output("No packages installed")
			return 0

		if long_format:
			print(
				f"{'':2}{'NAME':<20} {'VERSION':<12} {'INSTALLED':<20} {'USED':<20} {'SIZE':>8}  DIRECTORY"
			)
		else:
			print(f"{'':2}{'NAME':<20} {'VERSION':<12} DIRECTORY")

		for r in records:
			marker = nodeploy_util_color("*", "green") if r.directory_name == current else " "
			if long_format:
				try:
					size = nodeploy_util_format_size(nodeploy_util_dir_size(r.path))
				except OSError:
					size = "-"
				print(
					f"{marker} {r.name:<20} {r.version:<12} {r.installed_at[:19]:<20} "
					f"{(r.used_at or '-')[:19]:<20} {size:>8}  {r.directory_name}"
				)
			else:
				print(f"{marker} {r.name:<20} {r.version:<12} {r.directory_name}")
		return 0
	except Exception as e:
		nodeploy_util_error(str(e))
		return 1


def nodeploy_cmd_handler_ll(args: argparse.Namespace) -> int:
	"""Handle 'll' command."""
	return nodeploy_cmd_handler_list(args, long_format=True)


def nodeploy_cmd_handler_current(args: argparse.Namespace) -> int:
	"""Handle 'current' command."""
	try:
		packages_dir = Path(args.packages_dir).expanduser()
		record = nodeploy_store_get_current(packages_dir)
		if record is None:
			nodeploy_util_error("No current package")
			return 1
		if args.json:
			print(json.dumps(record.to_dict(), indent=2))
		else:
			print(f"{record.name}@{record.version} ({record.directory_name})")
		return 0
	except Exception as e:
		nodeploy_util_error(str(e))
		return 1


def nodeploy_cmd_handler_info(args: argparse.Namespace) -> int:
	"""Handle 'info' command."""
	try:
		packages_dir = Path(args.packages_dir).expanduser()
		directory_name = nodeploy_resolve(args.package, packages_dir)
		record = nodeploy_store_get(packages_dir, directory_name)
		if record is None:
			raise NotFound(args.package)
		current = nodeploy_store_get_current_name(packages_dir)
		if args.json:
			data = record.to_dict()
			data["current"] = directory_name == current
			print(json.dumps(data, indent=2))
		else:
			_nodeploy_print_record(record, current)
		return 0
	except Exception as e:
		nodeploy_util_error(str(e))
		return 1


def nodeploy_cmd_handler_use(args: argparse.Namespace) -> int:
	"""Handle 'use' command."""
	try:
		packages_dir, config = _nodeploy_context(args)
		options = UseOptions(disabled_hooks=_nodeploy_disabled_hooks(args))
		nodeploy_engine_use(packages_dir, args.package, options, config)
		return 0
	except Exception as e:
		nodeploy_util_error(str(e))
		return 1


def nodeploy_cmd_handler_uninstall(args: argparse.Namespace) -> int:
	"""Handle 'uninstall' command."""
	try:
		packages_dir, config = _nodeploy_context(args)
		options = UninstallOptions(disabled_hooks=_nodeploy_disabled_hooks(args))
		nodeploy_engine_uninstall(packages_dir, args.package, options, config)
		return 0
	except Exception as e:
		nodeploy_util_error(str(e))
		return 1


def nodeploy_cmd_handler_clean(args: argparse.Namespace) -> int:
	"""Handle 'clean' command."""
	try:
		packages_dir, config = _nodeploy_context(args)
		options = CleanOptions(
			disabled_hooks=_nodeploy_disabled_hooks(args), keep=args.keep
		)
		result = nodeploy_engine_clean(packages_dir, options, config)
		if result.removed:
			nodeploy_util_log_op(f"Removed {len(result.removed)} package(s)")
		elif not result.failed:
			nodeploy_util_log_op("Nothing to clean")
		if result.failed:
			nodeploy_util_error(f"{len(result.failed)} package(s) could not be removed")
			return 1
		return 0
	except Exception as e:
		nodeploy_util_error(str(e))
		return 1


def nodeploy_cmd_handler_run(args: argparse.Namespace) -> int:
	"""Handle 'run' command."""
	try:
		packages_dir, config = _nodeploy_context(args)
		if not args.script:
			record = nodeploy_store_get_current(packages_dir)
			if record is None:
				raise NotFound(CURRENT_TARGET, "no current package")
			if not record.scripts:
				nodeploy_util_output(f"{record.name} defines no scripts")
			for name, command in sorted(record.scripts.items()):
				print(f"{name:<16} {command}")
			return 0
		return nodeploy_task_run(packages_dir, args.script, args.args, config)
	except Exception as e:
		nodeploy_util_error(str(e))
		return 1


# --- Main Entry Point ---


def nodeploy_main(argv: Optional[list[str]] = None) -> int:
	"""Main entry point."""
	global _verbose, _quiet, _no_color

	parser = nodeploy_build_parser()
	args = parser.parse_args(argv)

	if args.version:
		print(f"nodeploy {NODEPLOY_VERSION}")
		return 0

	_verbose = args.verbose
	_quiet = args.quiet
	_no_color = args.no_color or NODEPLOY_NO_COLOR or not sys.stdout.isatty()

	if not args.command:
		parser.print_help()
		return 0

	handlers = {
		"install": nodeploy_cmd_handler_install,
		"list": nodeploy_cmd_handler_list,
		"ls": nodeploy_cmd_handler_list,
		"ll": nodeploy_cmd_handler_ll,
		"current": nodeploy_cmd_handler_current,
		"cur": nodeploy_cmd_handler_current,
		"info": nodeploy_cmd_handler_info,
		"use": nodeploy_cmd_handler_use,
		"uninstall": nodeploy_cmd_handler_uninstall,
		"remove": nodeploy_cmd_handler_uninstall,
		"rm": nodeploy_cmd_handler_uninstall,
		"clean": nodeploy_cmd_handler_clean,
		"run": nodeploy_cmd_handler_run,
	}

	handler = handlers.get(args.command)
	if not handler:
		nodeploy_util_error(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	sys.exit(nodeploy_main())

# EOF
