# Copyright (c) 2025 Joe Walter
# GNU General Public License v3.0

import sys
import argparse
import os
import re
import json
import shutil
import secrets
import datetime
import logging
import tempfile
import time
import traceback
from pathlib import Path
from typing import NamedTuple, Callable

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

DEFAULT_CONFIG_FILE = "config.json"
DEFAULT_INDEX_FILE  = "filesIndex.json"

ProgressFn = Callable[[int, int], None]

class _DebugInfoFilter(logging.Filter):
	'''Logging filter that only allows DEBUG and INFO records to pass.'''

	def filter(self, record):
		return logging.DEBUG <= record.levelno <= logging.INFO

class _ArgParser:
	'''Argument parser for when this python file is run with arguments instead of an imported module.'''

	parser = argparse.ArgumentParser(
		description="Index the configured source directories and back them up into a dated folder under the backup root. In overwrite mode, the previous backup folder is renamed and only new, changed and deleted files are applied to it.",
		epilog="(c) 2025 Joe Walter"
	)

	parser.add_argument("-c", "--config", metavar="path", type=str, default=DEFAULT_CONFIG_FILE, help=f"The JSON config file with `backupRootDirectory`, `sourceDirectories` and `overwritePreviousBackups`. (Defaults to \"{DEFAULT_CONFIG_FILE}\".)")
	parser.add_argument("--build-index-only", action="store_true", default=False, help="Build and save the index of the source directories without creating a backup.")
	parser.add_argument("--index-file", metavar="path", type=str, default=None, help="The index file to compare against and to overwrite at the end of the run. Overrides `indexFile` in the config.")

	parser.add_argument("--log", metavar="path", nargs="?", type=str, default=None, const="auto", help="The path of the log file to use. It will be created if it does not exist. With \"auto\" or no argument, a tempfile will be used for the log, and it will be moved to the user's home directory after the backup is done. If this flag is absent, then no logging will be performed.")
	parser.add_argument("--debug", action="store_true", default=False, help="Log debug messages.")
	parser.add_argument("-q", action="count", default=0, help="Forgo printing to stdout (-q) and stderr (-qq).")

	@staticmethod
	def parse(args:list[str]) -> argparse.Namespace:
		parsed_args = _ArgParser.parser.parse_args(args)
		parsed_args.quiet     = parsed_args.q >= 1
		parsed_args.veryquiet = parsed_args.q >= 2
		del parsed_args.q
		return parsed_args

class BackupError(Exception):
	'''Base class of the errors that end (or are reported during) a backup run. `exit_code` is the process exit status the run should end with.'''

	exit_code = 1

class ConfigError(BackupError):
	'''The config file is missing, unreadable or invalid.'''

	exit_code = 2

class DirectoryUnreadable(BackupError):
	'''A source directory could not be listed, so the index would be incomplete.'''

	exit_code = 3

	def __init__(self, path:str, reason:str = ""):
		self.path = path
		super().__init__(f"Cannot read directory: {path}" + (f" ({reason})" if reason else ""))

class IndexCorrupt(BackupError):
	'''The saved index could not be read or does not hold a list of valid records.'''

	exit_code = 4

class IndexWriteFailed(BackupError):
	'''The index could not be saved. Reported, but the backup itself still counts as successful.'''

	exit_code = 0

class DestinationCreateFailed(BackupError):
	'''The backup folder of this run could not be created, or the previous one could not be renamed.'''

	exit_code = 5

class CopyFailed(BackupError):
	'''A file could not be copied into the backup. `source` is the offending source path.'''

	exit_code = 6

	def __init__(self, source:str, msg:str | None = None):
		self.source = source
		super().__init__(msg or f"Cannot copy file: {source}")

class PathCollision(CopyFailed):
	'''Two indexed files would be written to the same path inside the backup.'''

class DeleteWarning(BackupError):
	'''A stale file or directory could not be removed from the backup. Never raised, only collected.'''

	exit_code = 0

class FileRecord(NamedTuple):
	'''One indexed file.'''

	path     : str
	size     : int
	modified : float

class IndexPass(NamedTuple):
	'''Result of `build_index()`: the file records and the (normcased) directories visited.'''

	records      : list[FileRecord]
	visited_dirs : set[str]

class DiffResult(NamedTuple):
	to_copy   : list[FileRecord]
	to_delete : list[FileRecord]

class Destination(NamedTuple):
	'''The directory receiving this run's files, and the previous backup it was renamed from (if any).'''

	path        : Path
	reused_from : Path | None

class Config(NamedTuple):
	backup_root                : Path
	source_dirs                : list[Path]
	overwrite_previous_backups : bool = False
	index_file                 : Path = Path(DEFAULT_INDEX_FILE)
	follow_symlinks            : bool = False

class Results:
	'''Various statistics and other information returned by `backup()`.'''

	def __init__(self) -> None:
		self.destination : Path | None       = None
		self.log_file    : Path | None       = None
		self.diff        : DiffResult | None = None

		self.success     : bool                = False
		self.exit_code   : int                 = 1
		self.errors      : list[str]           = []
		self.warnings    : list[DeleteWarning] = []

		self.indexed_files = 0
		self.index_saved   = False

		self.copy_success       = 0
		self.delete_success     = 0
		self.dir_delete_success = 0
		self.byte_diff          = 0

class _ProgressBar:
	'''Single-line progress bar on stderr, redrawn in place. Called as `bar(current, total)`.'''

	width = 30

	def __init__(self, title:str, stream = None):
		self.title  = title
		self.stream = stream if stream is not None else sys.stderr

	def __call__(self, current:int, total:int) -> None:
		fraction = current / total if total else 1.0
		filled = int(self.width * fraction)
		bar = "#" * filled + "." * (self.width - filled)
		self.stream.write(f"\r{self.title} [{bar}] {fraction:4.0%} | {current}/{total}")
		if current >= total:
			self.stream.write("\n")
		self.stream.flush()

def _progress_bar(title:str, enabled:bool) -> ProgressFn | None:
	return _ProgressBar(title) if enabled else None

_CONFIG_KEYS = {"backupRootDirectory", "sourceDirectories", "overwritePreviousBackups", "indexFile", "followSymlinks"}

def load_config(path:str | os.PathLike[str], *, index_file:str | os.PathLike[str] | None = None) -> Config:
	'''
	Reads the JSON config file at `path`. Relative paths inside it are resolved against the directory of the config file. `index_file`, if given, overrides the `indexFile` key.

	Raises `ConfigError` if the file is missing, not valid JSON, or has missing, mistyped or unknown keys.
	'''

	path = Path(path)
	try:
		with path.open("r", encoding="utf-8") as f:
			data = json.load(f)
	except FileNotFoundError as e:
		raise ConfigError(f"Config file not found: {path}") from e
	except (OSError, ValueError) as e:
		raise ConfigError(f"Cannot read config file {path}: {e}") from e

	if not isinstance(data, dict):
		raise ConfigError(f"Config file must contain a JSON object: {path}")
	unknown = sorted(set(data) - _CONFIG_KEYS)
	if unknown:
		raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

	backup_root = data.get("backupRootDirectory")
	if not isinstance(backup_root, str) or not backup_root:
		raise ConfigError(f"Bad value for 'backupRootDirectory' (expected non-empty str): {backup_root!r}")
	source_dirs = data.get("sourceDirectories")
	if not isinstance(source_dirs, list) or not source_dirs or not all(isinstance(d, str) and d for d in source_dirs):
		raise ConfigError(f"Bad value for 'sourceDirectories' (expected non-empty list of str): {source_dirs!r}")
	overwrite = data.get("overwritePreviousBackups", False)
	if not isinstance(overwrite, bool):
		raise ConfigError(f"Bad type for 'overwritePreviousBackups' (expected bool): {overwrite!r}")
	follow_symlinks = data.get("followSymlinks", False)
	if not isinstance(follow_symlinks, bool):
		raise ConfigError(f"Bad type for 'followSymlinks' (expected bool): {follow_symlinks!r}")
	if index_file is None:
		index_file = data.get("indexFile", DEFAULT_INDEX_FILE)
		if not isinstance(index_file, str) or not index_file:
			raise ConfigError(f"Bad value for 'indexFile' (expected non-empty str): {index_file!r}")
		index_file = _resolve(path.parent, index_file)
	else:
		index_file = Path(os.path.abspath(index_file))

	config = Config(
		backup_root                = _resolve(path.parent, backup_root),
		source_dirs                = [_resolve(path.parent, d) for d in source_dirs],
		overwrite_previous_backups = overwrite,
		index_file                 = index_file,
		follow_symlinks            = follow_symlinks,
	)
	for source_dir in config.source_dirs:
		if config.backup_root.is_relative_to(source_dir):
			raise ConfigError(f"Backup root is inside a source directory: {config.backup_root}")
	return config

def _resolve(base:Path, path:str) -> Path:
	return Path(os.path.abspath(os.path.join(base, os.path.expanduser(path))))

def build_index(
		roots           : list[str | os.PathLike[str]],
		*,
		follow_symlinks : bool = False,
		progress        : ProgressFn | None = None,
	) -> IndexPass:
	'''
	Retrieves the path, size and mtime of every regular file under each directory in `roots`.

	A root is skipped if it was already visited, either as an earlier root or as a subdirectory of one. Progress is reported once per root.

	Args
		roots (list)           : The directories to index, in order.
		follow_symlinks (bool) : Whether to descend into symbolic links to directories under each root. Links to files are always indexed by their target's size and mtime. When `True`, a directory that was already walked through another link is skipped with a warning. (Defaults to `False`.)
		progress (callable)    : Called as `progress(current, total)` after each root.

	Raises
		DirectoryUnreadable: a directory could not be listed (missing, not a directory, or no permission).
	'''

	index_pass = IndexPass(records=[], visited_dirs=set())
	visited_inodes : set[tuple[int, int]] = set()

	for i, root in enumerate(roots, 1):
		root = os.path.abspath(root)
		if os.path.normcase(root) in index_pass.visited_dirs:
			logger.debug(f"skipping duplicate root: {root}")
		else:
			logger.debug(f"indexing: {root}")
			_walk(root, index_pass, visited_inodes, follow_symlinks=follow_symlinks)
		if progress is not None:
			progress(i, len(roots))

	return index_pass

def _walk(root:str, index_pass:IndexPass, visited_inodes:set[tuple[int, int]], *, follow_symlinks:bool = False) -> None:
	'''Depth-first walk of `root` with an explicit stack, appending to `index_pass`.'''

	stack = [root]
	while stack:
		dir = stack.pop()
		normed_dir = os.path.normcase(dir)
		if normed_dir in index_pass.visited_dirs:
			logger.debug(f"skipping visited dir: {dir}")
			continue

		try:
			if follow_symlinks:
				stat = os.stat(dir)
				inode = (stat.st_dev, stat.st_ino)
				if inode in visited_inodes:
					logger.warning(f"Directory already indexed through another link, skipping: {dir}")
					continue
				visited_inodes.add(inode)
			with os.scandir(dir) as it:
				entries = sorted(it, key=lambda entry: entry.name)
		except OSError as e:
			raise DirectoryUnreadable(dir, _error_summary(e)) from e
		index_pass.visited_dirs.add(normed_dir)

		subdirs = []
		for entry in entries:
			try:
				if entry.is_dir(follow_symlinks=follow_symlinks):
					subdirs.append(entry.path)
				elif entry.is_file():
					stat = entry.stat()
					index_pass.records.append(FileRecord(path=entry.path, size=stat.st_size, modified=stat.st_mtime))
				elif entry.is_dir():
					logger.info(f"Not following directory link: {entry.path}")
				elif entry.is_symlink():
					logger.warning(f"Skipping broken link: {entry.path}")
				else:
					logger.debug(f"skipping (not a regular file): {entry.path}")
			except OSError as e:
				raise DirectoryUnreadable(dir, _error_summary(e)) from e

		# reversed so subdirectories are popped in name order
		stack.extend(reversed(subdirs))

class IndexStore:
	'''
	The index of the previous run, kept as a JSON list of `{"path", "size", "modified"}` objects.

	Only one generation is kept: `save()` replaces the file atomically.
	'''

	def __init__(self, path:str | os.PathLike[str]):
		self.path = Path(path)

	def load(self) -> tuple[list[FileRecord], bool]:
		'''Returns the stored records and whether an index file was found. A missing file is not an error.'''

		try:
			with self.path.open("r", encoding="utf-8", errors="surrogateescape") as f:
				data = json.load(f)
		except FileNotFoundError:
			return [], False
		except (OSError, ValueError) as e:
			raise IndexCorrupt(f"Cannot read index {self.path}: {e}") from e

		if not isinstance(data, list):
			raise IndexCorrupt(f"Index is not a list of records: {self.path}")
		records = []
		for i, item in enumerate(data):
			if not isinstance(item, dict):
				raise IndexCorrupt(f"Index entry {i} is not an object: {self.path}")
			path     = item.get("path")
			size     = item.get("size")
			modified = item.get("modified")
			if not isinstance(path, str) or not os.path.isabs(path) or os.path.normpath(path) != path:
				raise IndexCorrupt(f"Index entry {i} has a bad 'path': {path!r}")
			if not isinstance(size, int) or isinstance(size, bool) or size < 0:
				raise IndexCorrupt(f"Index entry {i} has a bad 'size': {size!r}")
			if not isinstance(modified, (int, float)) or isinstance(modified, bool):
				raise IndexCorrupt(f"Index entry {i} has a bad 'modified': {modified!r}")
			records.append(FileRecord(path=path, size=size, modified=float(modified)))
		return records, True

	def save(self, records:list[FileRecord]) -> None:
		'''Writes `records` with fields in `path`, `size`, `modified` order. Raises `IndexWriteFailed`.'''

		data = [{"path": r.path, "size": r.size, "modified": r.modified} for r in records]
		tmp = self.path.with_name(self.path.name + ".tmp")
		try:
			make_dirs(self.path.parent)
			with tmp.open("w", encoding="utf-8", errors="surrogateescape") as f:
				json.dump(data, f, indent=2, ensure_ascii=False)
				f.write("\n")
			tmp.replace(self.path)
		except (OSError, ValueError) as e:
			try:
				tmp.unlink(missing_ok=True)
			except OSError:
				logger.debug(f"cannot remove temp index: {tmp}")
			raise IndexWriteFailed(f"Cannot write index {self.path}: {e}") from e

def diff_index(current:list[FileRecord], previous:list[FileRecord], *, incremental:bool = True) -> DiffResult:
	'''
	Splits `current` against `previous` into files to copy and stale files to delete.

	A file is copied if it is new, or if it looks larger or newer than before; the previous version of a copied file is deleted first. Files that look smaller or older are left alone. Files missing from `current` are deleted. With `incremental` off, everything is copied and nothing is deleted.

	>>> old = [FileRecord("/a", 10, 1.0), FileRecord("/b", 20, 1.0), FileRecord("/c", 30, 5.0)]
	>>> new = [FileRecord("/a", 15, 1.0), FileRecord("/c", 30, 4.0), FileRecord("/d", 5, 2.0)]
	>>> diff = diff_index(new, old)
	>>> [r.path for r in diff.to_copy]
	['/a', '/d']
	>>> [(r.path, r.size) for r in diff.to_delete]
	[('/a', 10), ('/b', 20)]
	'''

	if not incremental:
		return DiffResult(to_copy=list(current), to_delete=[])

	remaining = {record.path: record for record in previous}
	to_copy   : list[FileRecord] = []
	to_delete : list[FileRecord] = []
	for record in current:
		old = remaining.pop(record.path, None)
		if old is None:
			to_copy.append(record)
		elif old.size < record.size or old.modified < record.modified:
			to_copy.append(record)
			to_delete.append(old)
	to_delete.extend(remaining.values())
	return DiffResult(to_copy=to_copy, to_delete=to_delete)

def generate_backup_name(today:datetime.date | None = None) -> str:
	'''
	Returns a new backup folder name: the date plus a random token.

	>>> re.fullmatch(r"2024-03-05_[0-9a-f]{16}", generate_backup_name(datetime.date(2024, 3, 5))) is not None
	True
	'''

	if today is None:
		today = datetime.date.today()
	return f"{today:%Y-%m-%d}_{secrets.token_hex(8)}"

def find_previous_backup(backup_root:Path) -> Path | None:
	'''Returns the directory under `backup_root` with the latest creation time, or `None` if there is none.'''

	try:
		with os.scandir(backup_root) as it:
			candidates = [
				(_creation_time(entry.stat(follow_symlinks=False)), entry.name, Path(entry.path))
				for entry in it
				if entry.is_dir(follow_symlinks=False)
			]
	except FileNotFoundError:
		return None
	except OSError as e:
		raise DestinationCreateFailed(f"Cannot list backup root {backup_root}: {_error_summary(e)}") from e
	if not candidates:
		return None
	return max(candidates)[2]

def _creation_time(stat:os.stat_result) -> float:
	# st_birthtime is missing on most Linux builds. st_ctime also moves on chmod/chown,
	# so touching an old backup folder's metadata makes it the "latest" one.
	return getattr(stat, "st_birthtime", stat.st_ctime)

def resolve_destination(backup_root:str | os.PathLike[str], *, overwrite:bool = False, today:datetime.date | None = None) -> Destination:
	'''
	Picks the directory that receives this run's files.

	With `overwrite`, the most recently created backup folder is renamed to a new name and reused in place. Otherwise (or if there is no previous folder) a new empty folder is created under `backup_root`, creating `backup_root` too if needed.

	Raises
		DestinationCreateFailed: the folder could not be created or renamed.
	'''

	backup_root = Path(backup_root)
	dst = backup_root / generate_backup_name(today)

	if overwrite:
		previous = find_previous_backup(backup_root)
		if previous is not None:
			try:
				previous.rename(dst)
			except OSError as e:
				raise DestinationCreateFailed(f"Cannot rename previous backup {previous} -> {dst}: {_error_summary(e)}") from e
			logger.info(f"Reusing previous backup: {previous.name} -> {dst.name}")
			return Destination(path=dst, reused_from=previous)
		logger.info("No previous backup to reuse, creating a new one.")

	try:
		make_dirs(backup_root)
		dst.mkdir()
	except OSError as e:
		raise DestinationCreateFailed(f"Cannot create backup folder {dst}: {_error_summary(e)}") from e
	return Destination(path=dst, reused_from=None)

def make_dirs(path:str | os.PathLike[str]) -> None:
	'''
	Creates `path` and any missing parents. Finds the deepest existing ancestor first, then creates each missing directory downward. A directory that already exists (or appears meanwhile) counts as success.
	'''

	path = Path(path)
	missing = []
	while not path.is_dir():
		missing.append(path)
		if path.parent == path:
			break
		path = path.parent

	for dir in reversed(missing):
		try:
			dir.mkdir()
		except FileExistsError:
			if not dir.is_dir():
				raise

def _backup_relpath(source_path:str) -> Path:
	'''
	Relative path of `source_path` inside a backup folder. The drive colon and the root separator are dropped.

	>>> _backup_relpath("/home/user/a.txt").as_posix()
	'home/user/a.txt'
	'''

	path = Path(source_path)
	if not path.anchor:
		return path
	anchor_parts = [part for part in re.split(r"[\\/]+", path.anchor.replace(":", "")) if part]
	return Path(*anchor_parts, *path.parts[1:])

def _backup_target(destination:Path, source_path:str) -> Path:
	'''
	Path of `source_path` inside the (normalized) backup folder `destination`. Raises `ValueError` if it would land outside of it.

	>>> _backup_target(Path("/bak"), "/home/../../etc/passwd")
	Traceback (most recent call last):
	...
	ValueError: Path escapes the backup folder: /home/../../etc/passwd
	'''

	target = Path(os.path.normpath(destination / _backup_relpath(source_path)))
	if target == destination or not target.is_relative_to(destination):
		raise ValueError(f"Path escapes the backup folder: {source_path}")
	return target

def check_collisions(records:list[FileRecord]) -> None:
	'''Raises `PathCollision` if two records would be backed up to the same path.'''

	seen : dict[str, str] = {}
	for record in records:
		key = os.path.normcase(str(_backup_relpath(record.path)))
		other = seen.setdefault(key, record.path)
		if other != record.path:
			raise PathCollision(record.path, f"Files would collide in the backup: {other} and {record.path}")

def apply_diff(
		destination : str | os.PathLike[str],
		to_delete   : list[FileRecord],
		to_copy     : list[FileRecord],
		*,
		delete      : bool = True,
		results     : Results | None = None,
		progress    : Callable[[str], ProgressFn | None] | None = None,
	) -> Results:
	'''
	Applies a diff to `destination`: removes the files in `to_delete` (and directories left empty by that), then copies the files in `to_copy`.

	Deletion problems are collected in `results.warnings` and do not stop the run. The first copy failure raises `CopyFailed` and nothing further is copied.

	Args
		destination (str or PathLike) : The backup folder of this run.
		to_delete (list)              : Records of the stale files, as indexed by the previous run.
		to_copy (list)                : Records of the source files to copy.
		delete (bool)                 : Whether to run the delete phase. (Defaults to `True`.)
		results (Results)             : Counters to update. A new `Results` is made if omitted.
		progress (callable)           : Called with a phase title ("Deleting", "Copying"); returns a `progress(current, total)` callable or `None`.
	'''

	destination = Path(os.path.normpath(destination))
	if results is None:
		results = Results()
	if progress is None:
		progress = lambda title: None

	if delete and to_delete:
		_delete_files(destination, to_delete, results, progress("Deleting"))
	if to_copy:
		_copy_files(destination, to_copy, results, progress("Copying"))
	return results

def _delete_files(destination:Path, to_delete:list[FileRecord], results:Results, progress:ProgressFn | None) -> None:
	touched_dirs : set[Path] = set()
	for i, record in enumerate(to_delete, 1):
		logger.info(f"- {record.path}")
		try:
			target = _backup_target(destination, record.path)
		except ValueError as e:
			_warn(results, DeleteWarning(str(e)))
			if progress is not None:
				progress(i, len(to_delete))
			continue
		try:
			target.unlink()
			results.delete_success += 1
			results.byte_diff -= record.size
		except OSError as e:
			_warn(results, DeleteWarning(f"Cannot delete {target}: {_error_summary(e)}"))
		touched_dirs.add(target.parent)
		if progress is not None:
			progress(i, len(to_delete))

	# deepest first so parents see their children gone
	for dir in sorted(touched_dirs, key=lambda d: len(d.parts), reverse=True):
		try:
			results.dir_delete_success += _delete_empty_dirs(dir, root=destination)
		except OSError as e:
			_warn(results, DeleteWarning(f"Cannot delete directory {dir}: {_error_summary(e)}"))

def _copy_files(destination:Path, to_copy:list[FileRecord], results:Results, progress:ProgressFn | None) -> None:
	for i, record in enumerate(to_copy, 1):
		logger.info(f"+ {record.path}")
		try:
			target = _backup_target(destination, record.path)
		except ValueError as e:
			raise CopyFailed(record.path, str(e)) from e
		try:
			make_dirs(target.parent)
			_copy(Path(record.path), target)
		except OSError as e:
			raise CopyFailed(record.path, f"Cannot copy {record.path}: {_error_summary(e)}") from e
		results.copy_success += 1
		results.byte_diff += record.size
		if progress is not None:
			progress(i, len(to_copy))

def _warn(results:Results, warning:DeleteWarning) -> None:
	logger.warning(str(warning))
	results.warnings.append(warning)

def _copy(src:Path, dst:Path) -> None:
	'''Copy file from `src` to `dst` through a temp file next to `dst`, keeping timestamp metadata. An existing `dst` file is replaced.'''

	if dst.exists() and not dst.is_file():
		raise FileExistsError(f"Cannot copy, dst is not a file: {src} -> {dst}")

	delete_tmp = False
	dst_tmp = dst.with_name(dst.name + ".tempcopy")
	try:
		# Copy into a temp file, with metadata
		delete_tmp = True
		shutil.copy2(src, dst_tmp)
		# Rename the temp file into the dest file
		dst_tmp.replace(dst)
		delete_tmp = False
	finally:
		# Remove the temp copy if there are any errors
		if delete_tmp:
			dst_tmp.unlink(missing_ok=True)

def _delete_empty_dirs(dir:Path, *, root:Path) -> int:
	'''Iteratively delete empty directories, starting with `dir` and moving up to (but not including) `root`. Returns the number of directories removed.'''

	if not dir.is_relative_to(root):
		raise ValueError(f"root ({root}) is not an ancestor of dir ({dir})")
	removed = 0
	# a missing dir was already removed with a sibling, or its file warning was reported
	while dir != root and dir.is_dir() and not any(dir.iterdir()):
		logger.debug(f"- {dir.relative_to(root)}{os.sep}")
		dir.rmdir()
		removed += 1
		dir = dir.parent
	return removed

def backup_cmd(args:list[str]) -> Results:
	'''Run `backup()` with command line arguments.'''

	parsed_args = _ArgParser.parse(args)
	return backup(
		parsed_args.config,
		index_file = parsed_args.index_file,
		index_only = parsed_args.build_index_only,
		log        = parsed_args.log,
		debug      = parsed_args.debug,
		quiet      = parsed_args.quiet,
		veryquiet  = parsed_args.veryquiet,
		progress   = True,
	)

def backup(
		config     : Config | str | os.PathLike[str],
		*,
		index_file : str | os.PathLike[str] | None = None,
		index_only : bool = False,
		log        : str | os.PathLike[str] | None = None,
		debug      : bool = False,
		quiet      : bool = False,
		veryquiet  : bool = False,
		progress   : bool = False,
	) -> Results:
	'''
	Indexes the source directories and backs them up into a new folder under the backup root.

	In overwrite mode, the most recent backup folder is renamed and reused: only files that are new, larger or newer than in the saved index are copied, and files that were replaced or removed since are deleted from it. Otherwise every file is copied into a fresh folder. The new index replaces the saved one at the end of a successful run; a run that fails leaves the saved index untouched.

	Args
		config (Config, str or PathLike) : The configuration, or the path of a JSON config file to load.
		index_file (str or PathLike)     : Overrides the configured index file when `config` is a path.
		index_only (bool)                : Only build and save the index. The backup root is not touched. (Defaults to `False`.)

		log (str or PathLike)            : The path of the log file to use. A value of "auto" means a tempfile will be used for the log, and it will be moved to the user's home directory after the backup is done. A value of `None` will skip logging to a file. (Defaults to `None`.)
		debug (bool)                     : Whether to log debug messages. (Default to `False`.)
		quiet (bool)                     : Whether to forgo printing to stdout.
		veryquiet (bool)                 : Whether to forgo printing to stdout and stderr.
		progress (bool)                  : Whether to draw progress bars on stderr when it is a terminal.

	Example Console Output
		Indexing 1 source directories...
		Index contains 2 files.
		Reusing previous backup: 2025-07-28_1f0c2a9e4b7d6c35 -> 2025-07-29_9a8b7c6d5e4f3a21
		- /home/user/docs/old.txt
		+ /home/user/docs/new.txt

		*** ibackup finished successfully. ***

		Summary
		-------
		Indexed Files: 2
		Copy Success: 1
		Delete Success: 1
		Net Change: +0 bytes
		Destination: /mnt/backup/2025-07-29_9a8b7c6d5e4f3a21

	Returns
		A `Results` object. `exit_code` is 0 on success, or the `exit_code` of the error that ended the run.
	'''
	results = Results()

	if logger.handlers:
		for handler in list(logger.handlers):
			logger.removeHandler(handler)

	log_file       = None
	tmp_log_file   = None
	handler_stdout = None
	handler_stderr = None
	handler_file   = None

	if veryquiet:
		quiet = True

	if not quiet:
		handler_stdout = logging.StreamHandler(sys.stdout)
		handler_stdout.setFormatter(logging.Formatter("%(message)s"))
		handler_stdout.addFilter(_DebugInfoFilter())
		if debug:
			handler_stdout.setLevel(logging.DEBUG)
		else:
			handler_stdout.setLevel(logging.INFO)
		logger.addHandler(handler_stdout)

	if not veryquiet:
		handler_stderr = logging.StreamHandler(sys.stderr)
		handler_stderr.setFormatter(logging.Formatter("%(message)s"))
		handler_stderr.setLevel(logging.WARNING)
		logger.addHandler(handler_stderr)

	show_progress = progress and not quiet and sys.stderr.isatty()

	try:
		if log is not None and not isinstance(log, (str, os.PathLike)):
			msg = f"Bad type for arg 'log' (expected str or PathLike): {log}"
			raise TypeError(msg)

		timestamp = str(int(time.time()*1000))
		if log is None:
			log_file = None
		elif log == "auto":
			log_file = Path.home() / f"ibackup.{timestamp}.log"
		else:
			log_file = Path(log)
		results.log_file = log_file
		if log_file is not None and os.path.exists(log_file):
			msg = f"Chosen log already exists: {log_file}"
			raise ValueError(msg)

		if log_file is not None:
			with tempfile.NamedTemporaryFile(mode="w+", encoding="utf-8", delete=False) as tmp_log:
				tmp_log_file = Path(tmp_log.name)
			formatter = logging.Formatter("%(levelname)s: %(message)s")
			handler_file = logging.FileHandler(tmp_log_file, encoding="utf-8")
			handler_file.setFormatter(formatter)
			if debug:
				handler_file.setLevel(logging.DEBUG)
			else:
				handler_file.setLevel(logging.INFO)
			logger.addHandler(handler_file)

		if isinstance(config, (str, os.PathLike)):
			logger.info(f"Loading config file: {config}")
			config = load_config(config, index_file=index_file)
		elif not isinstance(config, Config):
			msg = f"Bad type for arg 'config' (expected Config, str or PathLike): {config}"
			raise TypeError(msg)

		logger.debug(f"Starting backup: {config=} {index_only=} {log_file=} {debug=} {quiet=} {veryquiet=}")
		store = IndexStore(config.index_file)

		logger.info(f"Indexing {len(config.source_dirs)} source directories...")
		index_pass = build_index(
			config.source_dirs,
			follow_symlinks = config.follow_symlinks,
			progress        = _progress_bar("Indexing", show_progress),
		)
		current = index_pass.records
		results.indexed_files = len(current)
		logger.info(f"Index contains {len(current)} files.")

		if not index_only:
			check_collisions(current)

			previous : list[FileRecord] = []
			if config.overwrite_previous_backups:
				previous, found = store.load()
				if not found:
					logger.info(f"No previous index at {store.path}, all files will be copied.")

			destination = resolve_destination(config.backup_root, overwrite=config.overwrite_previous_backups)
			results.destination = destination.path
			if destination.reused_from is None:
				# a fresh folder holds none of the unchanged files
				previous = []

			diff = diff_index(current, previous, incremental=config.overwrite_previous_backups)
			results.diff = diff
			logger.info(f"{len(diff.to_copy)} files to copy, {len(diff.to_delete)} files to delete.")

			apply_diff(
				destination.path,
				diff.to_delete,
				diff.to_copy,
				delete   = config.overwrite_previous_backups,
				results  = results,
				progress = lambda title: _progress_bar(title, show_progress),
			)

		try:
			store.save(current)
			results.index_saved = True
			logger.info(f"Saved index to {store.path}")
		except IndexWriteFailed as e:
			logger.error(str(e))
			results.errors.append(str(e))

		logger.info("")
		logger.info("*** ibackup finished successfully. ***")

		results.success = True
		results.exit_code = 0

	except KeyboardInterrupt:
		logger.critical(f"Cancelled by user.")
		results.exit_code = 130
	except BackupError as e:
		logger.critical(f"{type(e).__name__}: {e}")
		results.errors.append(str(e))
		results.exit_code = e.exit_code
	except (TypeError, ValueError) as e:
		logger.critical(f"Input Error: {e}")
		results.errors.append(str(e))
		results.exit_code = ConfigError.exit_code
	except Exception as e:
		logger.critical("Unexpected error: " + _error_summary(e))
		logger.critical(traceback.format_exc())
		results.errors.append(_error_summary(e))

	finally:
		logger.info("")
		logger.info("Summary")
		logger.info("-------")
		logger.info(f"Indexed Files: {results.indexed_files}")
		if not index_only:
			logger.info(f"Copy Success: {results.copy_success}")
			logger.info(f"Delete Success: {results.delete_success}" + (f" / Warnings: {len(results.warnings)}" if results.warnings else ""))
			logger.info(f"Net Change: {_human_readable_size(results.byte_diff)}")
		if results.destination is not None:
			logger.info(f"Destination: {results.destination}")

		if results.errors:
			logger.info("")
			logger.info(f"There were {len(results.errors)} errors.")

		if log_file:
			logger.info("")
			logger.info(f"Log file: {log_file}")

		if handler_stdout:
			logger.removeHandler(handler_stdout)

		if handler_stderr:
			logger.removeHandler(handler_stderr)

		if handler_file:
			logger.removeHandler(handler_file)
			handler_file.close()
			assert tmp_log_file is not None
			assert log_file is not None
			shutil.move(tmp_log_file, log_file)

	return results

def _human_readable_size(n:int) -> str:
	'''
	Translates `n` bytes into a human-readable size.

	>>> _human_readable_size(0)
	'+0 bytes'
	>>> _human_readable_size(-1024)
	'-1 KB'
	>>> _human_readable_size(3 * 1024 * 1024 * 1024)
	'+3 GB'
	'''

	sign = "-" if n < 0 else "+"
	n = abs(n)
	units = ["bytes", "KB", "MB", "GB", "TB", "PB"]
	i = 0
	while n >= 1024 and i < len(units) - 1:
		n //= 1024
		i += 1
	return f"{sign}{round(n)} {units[i]}"

def _error_summary(e):
	'''Get a one-line summary of an Error.'''

	if isinstance(e, OSError):
		error_type = type(e).__name__
		affected_file = getattr(e, "filename", None) or "N/A"
		reason = e.strerror or str(e)
		msg = f"{error_type}: {affected_file} ({reason})"
	else:
		error_type = type(e).__name__
		msg = f"{error_type}: {e}"
	return msg

def main() -> None:
	results = backup_cmd(sys.argv[1:])
	sys.exit(results.exit_code)

if __name__ == "__main__":
	main()
