import os
import sys
import json
import time
import shutil
import datetime
import tempfile
import unittest
import doctest
from pathlib import Path
from unittest import mock

import ibackup

def create_file_structure(root_dir:Path, structure:dict) -> None:
	'''
	Recursively creates a directory structure with files.

	Values are a dict (subdirectory), a Path (symlink to it), an int (file of that many bytes), a tuple (content, mtime), None (empty file) or a str (file content).
	'''
	root_dir.mkdir(parents=True, exist_ok=True)
	for name, content in structure.items():
		file_path = root_dir / name
		if isinstance(content, Path):
			# create symlink
			os.symlink(content, file_path, target_is_directory=True)
		elif isinstance(content, dict):
			# create dir
			create_file_structure(file_path, content)
		elif isinstance(content, tuple):
			# Create file with modtime and content
			file_path.write_text(content[0] or "")
			mtime = float(content[1])
			os.utime(file_path, (mtime, mtime))
		elif isinstance(content, int):
			file_path.write_bytes(b"x" * content)
		elif content is None:
			# Create an empty file
			file_path.touch()
		else:
			# Create a file with content
			file_path.write_text(content)

def backed_up(destination:Path, source:Path) -> Path:
	'''Where `source` ends up inside the backup folder `destination`.'''
	return destination / ibackup._backup_relpath(str(source))

def relpaths(records, root:Path) -> list[str]:
	return sorted(os.path.relpath(r.path, root).replace(os.sep, "/") for r in records)

def load_tests(loader, tests, ignore):
	tests.addTests(doctest.DocTestSuite(ibackup))
	return tests

class TestIndex(unittest.TestCase):
	def test_build_index(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {
					"a": {
						"aa": {
							"1.txt": None,
						},
						"2.txt": "two",
					},
					"b": {},
					"3.txt": 3,
				},
				"src2": {
					"4.txt": None,
				},
			})
			src  = test_root / "src"
			src2 = test_root / "src2"

			calls = []
			index_pass = ibackup.build_index([src, src2], progress=lambda current, total: calls.append((current, total)))
			self.assertEqual(
				relpaths(index_pass.records, test_root),
				["src/3.txt", "src/a/2.txt", "src/a/aa/1.txt", "src2/4.txt"]
			)
			# a, a/aa and b, plus the two roots
			self.assertEqual(len(index_pass.visited_dirs), 5)
			self.assertEqual(calls, [(1, 2), (2, 2)])

			record = next(r for r in index_pass.records if r.path.endswith("3.txt"))
			self.assertTrue(os.path.isabs(record.path))
			self.assertEqual(record.size, 3)
			self.assertEqual(record.modified, os.stat(record.path).st_mtime)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_duplicate_roots(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {
					"a": {
						"1.txt": None,
						"2.txt": None,
					},
					"3.txt": None,
				},
			})
			src = test_root / "src"

			once = ibackup.build_index([src])
			twice = ibackup.build_index([src, src])
			self.assertEqual(twice.records, once.records)
			self.assertEqual(twice.visited_dirs, once.visited_dirs)

			# a nested root is walked once, whichever comes first
			nested = ibackup.build_index([src / "a", src])
			self.assertEqual(relpaths(nested.records, src), ["3.txt", "a/1.txt", "a/2.txt"])
			nested = ibackup.build_index([src, src / "a"])
			self.assertEqual(relpaths(nested.records, src), ["3.txt", "a/1.txt", "a/2.txt"])

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_unreadable_directory(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {
					"1.txt": None,
				},
			})
			missing = test_root / "missing"

			with self.assertRaises(ibackup.DirectoryUnreadable) as cm:
				ibackup.build_index([test_root / "src", missing])
			self.assertEqual(cm.exception.path, str(missing))
			self.assertEqual(cm.exception.exit_code, 3)

			with self.assertRaises(ibackup.DirectoryUnreadable):
				ibackup.build_index([test_root / "src" / "1.txt"])

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_file_links(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"real.txt": "linked content",
				"src": {},
				"dst": {},
			})
			src = test_root / "src"
			os.symlink(test_root / "real.txt", src / "link.txt")
			os.symlink(test_root / "missing.txt", src / "broken.txt")

			with self.assertLogs(ibackup.logger, level="WARNING"):
				records = ibackup.build_index([src]).records
			self.assertEqual(relpaths(records, src), ["link.txt"])
			self.assertEqual(records[0].size, len("linked content"))
			self.assertEqual(records[0].modified, os.stat(test_root / "real.txt").st_mtime)

			dst = test_root / "dst"
			ibackup.apply_diff(dst, [], records)
			copied = backed_up(dst, src / "link.txt")
			self.assertFalse(copied.is_symlink())
			self.assertEqual(copied.read_text(), "linked content")

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_symlinks(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src = test_root / "src"
			create_file_structure(test_root, {
				"src": {
					"dir": {
						"1.txt": None,
						"loop": test_root / "src" / "dir",
					},
				},
			})

			index_pass = ibackup.build_index([src])
			self.assertEqual(relpaths(index_pass.records, src), ["dir/1.txt"])

			with self.assertLogs(ibackup.logger, level="WARNING"):
				index_pass = ibackup.build_index([src], follow_symlinks=True)
			self.assertEqual(relpaths(index_pass.records, src), ["dir/1.txt"])

class TestIndexStore(unittest.TestCase):
	def test_round_trip(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {
					"a": {
						"1.txt": ("one", 1700000000.123456),
					},
					"2.txt": 20,
					"Ünïcödé.txt": None,
				},
			})
			records = ibackup.build_index([test_root / "src"]).records
			store = ibackup.IndexStore(test_root / "index" / "filesIndex.json")
			store.save(records)

			loaded, found = store.load()
			self.assertTrue(found)
			self.assertEqual(loaded, records)

			data = json.loads(store.path.read_text(encoding="utf-8"))
			self.assertEqual(len(data), 3)
			self.assertEqual(list(data[0].keys()), ["path", "size", "modified"])
			self.assertFalse(store.path.with_name(store.path.name + ".tmp").exists())

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_missing_index(self):
		with tempfile.TemporaryDirectory() as temp_root:
			store = ibackup.IndexStore(Path(temp_root) / "filesIndex.json")
			self.assertEqual(store.load(), ([], False))

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_corrupt_index(self):
		with tempfile.TemporaryDirectory() as temp_root:
			store = ibackup.IndexStore(Path(temp_root) / "filesIndex.json")
			for text in [
				"{not json",
				'{"path": "/a", "size": 1, "modified": 1}',
				'["/a"]',
				'[{"path": "/a", "size": "10", "modified": 1}]',
				'[{"path": "/a", "size": -1, "modified": 1}]',
				'[{"path": "/a", "size": 10, "modified": true}]',
				'[{"size": 10, "modified": 1}]',
				'[{"path": "", "size": 10, "modified": 1}]',
				'[{"path": "relative/a.txt", "size": 10, "modified": 1}]',
				'[{"path": "/../victim.txt", "size": 1, "modified": 1}]',
				'[{"path": "/src/../../victim.txt", "size": 1, "modified": 1}]',
			]:
				store.path.write_text(text, encoding="utf-8")
				with self.assertRaises(ibackup.IndexCorrupt, msg=text):
					store.load()

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_write_failure(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"not-a-dir": None,
			})
			store = ibackup.IndexStore(test_root / "not-a-dir" / "filesIndex.json")
			with self.assertRaises(ibackup.IndexWriteFailed):
				store.save([ibackup.FileRecord("/a", 1, 1.0)])

			# the temp file cannot be cleaned up either
			store = ibackup.IndexStore(test_root / "filesIndex.json")
			with mock.patch.object(Path, "replace", side_effect=PermissionError(13, "Permission denied")):
				with mock.patch.object(Path, "unlink", side_effect=PermissionError(13, "Permission denied")):
					with self.assertRaises(ibackup.IndexWriteFailed):
						store.save([ibackup.FileRecord("/a", 1, 1.0)])

class TestDiff(unittest.TestCase):
	current = [
		ibackup.FileRecord("/src/a.txt", 10, 100.0),
		ibackup.FileRecord("/src/b.txt", 20, 100.0),
		ibackup.FileRecord("/src/c/d.txt", 30, 100.0),
	]

	def test_unchanged(self):
		diff = ibackup.diff_index(self.current, list(self.current))
		self.assertEqual(diff, ibackup.DiffResult(to_copy=[], to_delete=[]))

	def test_first_run(self):
		diff = ibackup.diff_index(self.current, [])
		self.assertEqual(diff.to_copy, self.current)
		self.assertEqual(diff.to_delete, [])

	def test_not_incremental(self):
		diff = ibackup.diff_index(self.current, list(self.current), incremental=False)
		self.assertEqual(diff.to_copy, self.current)
		self.assertEqual(diff.to_delete, [])

	def test_larger_or_newer(self):
		old_a = ibackup.FileRecord("/src/a.txt", 5, 100.0)
		old_b = ibackup.FileRecord("/src/b.txt", 20, 99.5)
		previous = [old_a, old_b, self.current[2]]
		diff = ibackup.diff_index(self.current, previous)
		self.assertEqual(diff.to_copy, self.current[:2])
		self.assertEqual(diff.to_delete, [old_a, old_b])

	def test_smaller_or_older(self):
		previous = [
			ibackup.FileRecord("/src/a.txt", 11, 100.0),
			ibackup.FileRecord("/src/b.txt", 20, 101.0),
			ibackup.FileRecord("/src/c/d.txt", 31, 100.5),
		]
		diff = ibackup.diff_index(self.current, previous)
		self.assertEqual(diff, ibackup.DiffResult(to_copy=[], to_delete=[]))

	def test_new_and_removed(self):
		gone = ibackup.FileRecord("/src/gone.txt", 1, 1.0)
		new = ibackup.FileRecord("/src/new.txt", 1, 1.0)
		diff = ibackup.diff_index(self.current + [new], [gone] + self.current)
		self.assertEqual(diff.to_copy, [new])
		self.assertEqual(diff.to_delete, [gone])

	def test_replaced_before_removed(self):
		old_a = ibackup.FileRecord("/src/a.txt", 5, 100.0)
		gone = ibackup.FileRecord("/src/gone.txt", 1, 1.0)
		diff = ibackup.diff_index(self.current, [gone, old_a, self.current[1], self.current[2]])
		self.assertEqual(diff.to_delete, [old_a, gone])

class TestDestination(unittest.TestCase):
	def test_generate_backup_name(self):
		name = ibackup.generate_backup_name(datetime.date(2025, 1, 9))
		self.assertTrue(name.startswith("2025-01-09_"))
		self.assertNotEqual(ibackup.generate_backup_name(), ibackup.generate_backup_name())

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_new_folder(self):
		with tempfile.TemporaryDirectory() as temp_root:
			backup_root = Path(temp_root) / "missing" / "backups"
			destination = ibackup.resolve_destination(backup_root, today=datetime.date(2025, 12, 31))
			self.assertIsNone(destination.reused_from)
			self.assertEqual(destination.path.parent, backup_root)
			self.assertTrue(destination.path.name.startswith("2025-12-31_"))
			self.assertEqual(list(destination.path.iterdir()), [])

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_reuse_latest_folder(self):
		with tempfile.TemporaryDirectory() as temp_root:
			backup_root = Path(temp_root)
			create_file_structure(backup_root, {
				"2025-01-01_aaaa": {
					"old.txt": None,
				},
			})
			time.sleep(0.05)
			create_file_structure(backup_root, {
				"2025-01-02_bbbb": {
					"new.txt": None,
				},
				"filesIndex.json": "[]",
			})

			destination = ibackup.resolve_destination(backup_root, overwrite=True)
			self.assertEqual(destination.reused_from, backup_root / "2025-01-02_bbbb")
			self.assertFalse(destination.reused_from.exists())
			self.assertEqual(os.listdir(destination.path), ["new.txt"])
			self.assertTrue((backup_root / "2025-01-01_aaaa").is_dir())

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_reuse_without_previous(self):
		with tempfile.TemporaryDirectory() as temp_root:
			backup_root = Path(temp_root)
			create_file_structure(backup_root, {
				"filesIndex.json": "[]",
			})
			destination = ibackup.resolve_destination(backup_root, overwrite=True)
			self.assertIsNone(destination.reused_from)
			self.assertTrue(destination.path.is_dir())

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_create_failed(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"not-a-dir": None,
			})
			for overwrite in (False, True):
				with self.assertRaises(ibackup.DestinationCreateFailed):
					ibackup.resolve_destination(test_root / "not-a-dir", overwrite=overwrite)

class TestMakeDirs(unittest.TestCase):
	def test_make_dirs(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			path = test_root / "a" / "b" / "c"
			ibackup.make_dirs(path)
			self.assertTrue(path.is_dir())

			# already exists
			ibackup.make_dirs(path)
			ibackup.make_dirs(test_root / "a")
			self.assertTrue(path.is_dir())

			create_file_structure(test_root, {
				"file": None,
			})
			with self.assertRaises(OSError):
				ibackup.make_dirs(test_root / "file" / "d")

class TestApplyDiff(unittest.TestCase):
	def test_copy_and_delete(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {
					"keep": {
						"1.txt": "one",
					},
					"sub": {
						"deep": {
							"2.txt": "two",
						},
					},
					"3.txt": ("three", 1000),
				},
				"dst": {},
			})
			src = test_root / "src"
			dst = test_root / "dst"
			records = ibackup.build_index([src]).records

			calls = []
			def progress(title):
				return lambda current, total: calls.append((title, current, total))
			results = ibackup.apply_diff(dst, [], records, progress=progress)
			self.assertEqual(results.copy_success, 3)
			self.assertEqual(calls, [("Copying", 1, 3), ("Copying", 2, 3), ("Copying", 3, 3)])
			for record in records:
				self.assertEqual(backed_up(dst, Path(record.path)).read_bytes(), Path(record.path).read_bytes())
			self.assertEqual(backed_up(dst, src / "3.txt").stat().st_mtime, 1000)
			self.assertEqual(list(dst.rglob("*.tempcopy")), [])

			stale = [r for r in records if r.path.endswith(("1.txt", "2.txt"))]
			calls = []
			results = ibackup.apply_diff(dst, stale, [], progress=progress)
			self.assertEqual(calls, [("Deleting", 1, 2), ("Deleting", 2, 2)])
			self.assertEqual(results.delete_success, 2)
			self.assertEqual(results.warnings, [])
			self.assertFalse(backed_up(dst, src / "sub").exists())
			self.assertFalse(backed_up(dst, src / "keep").exists())
			self.assertTrue(backed_up(dst, src / "3.txt").exists())
			self.assertTrue(dst.is_dir())

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_delete_missing_is_warning(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			dst = test_root / "dst"
			dst.mkdir()
			missing = ibackup.FileRecord(str(test_root / "src" / "gone.txt"), 1, 1.0)
			with self.assertLogs(ibackup.logger, level="WARNING"):
				results = ibackup.apply_diff(dst, [missing], [])
			self.assertEqual(results.delete_success, 0)
			self.assertEqual(len(results.warnings), 1)
			self.assertIsInstance(results.warnings[0], ibackup.DeleteWarning)

			results = ibackup.apply_diff(dst, [missing], [], delete=False)
			self.assertEqual(results.warnings, [])

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_paths_outside_destination(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"backups": {
					"2025-01-01_aaaa": {},
					"victim.txt": "keep me",
				},
			})
			dst = test_root / "backups" / "2025-01-01_aaaa"
			victim = test_root / "backups" / "victim.txt"
			escaping = ibackup.FileRecord(os.sep + os.path.join("..", "victim.txt"), 7, 1.0)

			with self.assertLogs(ibackup.logger, level="WARNING"):
				results = ibackup.apply_diff(dst, [escaping], [])
			self.assertEqual(results.delete_success, 0)
			self.assertEqual(len(results.warnings), 1)
			self.assertEqual(victim.read_text(), "keep me")

			with self.assertRaises(ibackup.CopyFailed):
				ibackup.apply_diff(dst, [], [escaping])
			self.assertEqual(victim.read_text(), "keep me")

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_copy_failure_aborts(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {
					"1.txt": None,
				},
				"dst": {},
			})
			dst = test_root / "dst"
			missing = ibackup.FileRecord(str(test_root / "src" / "0.txt"), 1, 1.0)
			present = ibackup.FileRecord(str(test_root / "src" / "1.txt"), 0, 1.0)

			results = ibackup.Results()
			with self.assertRaises(ibackup.CopyFailed) as cm:
				ibackup.apply_diff(dst, [], [missing, present], results=results)
			self.assertEqual(cm.exception.source, missing.path)
			self.assertEqual(cm.exception.exit_code, 6)
			self.assertEqual(results.copy_success, 0)
			self.assertFalse(backed_up(dst, Path(present.path)).exists())

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_collisions(self):
		ibackup.check_collisions([
			ibackup.FileRecord("/src/a.txt", 1, 1.0),
			ibackup.FileRecord("/src/b.txt", 1, 1.0),
		])
		with self.assertRaises(ibackup.PathCollision):
			ibackup.check_collisions([
				ibackup.FileRecord(os.path.join("src", "a.txt"), 1, 1.0),
				ibackup.FileRecord(os.path.join(os.sep, "src", "a.txt"), 1, 1.0),
			])

class TestConfig(unittest.TestCase):
	def write_config(self, path:Path, data) -> Path:
		path.write_text(json.dumps(data), encoding="utf-8")
		return path

	def test_load_config(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			config_file = self.write_config(test_root / "config.json", {
				"backupRootDirectory": "backups",
				"sourceDirectories": ["src", str(test_root / "other")],
				"overwritePreviousBackups": True,
			})
			config = ibackup.load_config(config_file)
			self.assertEqual(config.backup_root, Path(os.path.abspath(test_root / "backups")))
			self.assertEqual(config.source_dirs, [Path(os.path.abspath(test_root / "src")), Path(os.path.abspath(test_root / "other"))])
			self.assertTrue(config.overwrite_previous_backups)
			self.assertFalse(config.follow_symlinks)
			self.assertEqual(config.index_file, Path(os.path.abspath(test_root / ibackup.DEFAULT_INDEX_FILE)))

			config = ibackup.load_config(config_file, index_file=test_root / "elsewhere.json")
			self.assertEqual(config.index_file, Path(os.path.abspath(test_root / "elsewhere.json")))

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_bad_config(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			with self.assertRaises(ibackup.ConfigError):
				ibackup.load_config(test_root / "missing.json")

			config_file = test_root / "config.json"
			config_file.write_text("{", encoding="utf-8")
			with self.assertRaises(ibackup.ConfigError):
				ibackup.load_config(config_file)

			for data in [
				[],
				{"sourceDirectories": ["src"]},
				{"backupRootDirectory": "b"},
				{"backupRootDirectory": "b", "sourceDirectories": []},
				{"backupRootDirectory": "b", "sourceDirectories": "src"},
				{"backupRootDirectory": "b", "sourceDirectories": ["src"], "overwritePreviousBackups": "yes"},
				{"backupRootDirectory": "b", "sourceDirectories": ["src"], "indexFile": 1},
				{"backupRootDirectory": "b", "sourceDirectories": ["src"], "useWindowsPathSymbols": True},
				{"backupRootDirectory": "src/backups", "sourceDirectories": ["src"]},
			]:
				self.write_config(config_file, data)
				with self.assertRaises(ibackup.ConfigError, msg=str(data)):
					ibackup.load_config(config_file)

class TestBackup(unittest.TestCase):
	def make_config(self, test_root:Path, *, overwrite:bool) -> ibackup.Config:
		return ibackup.Config(
			backup_root                = test_root / "backups",
			source_dirs                = [test_root / "src"],
			overwrite_previous_backups = overwrite,
			index_file                 = test_root / "filesIndex.json",
		)

	def make_source(self, test_root:Path) -> Path:
		create_file_structure(test_root, {
			"src": {
				"a.txt": 10,
				"b.txt": 20,
			},
		})
		return test_root / "src"

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_fresh_backup(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src = self.make_source(test_root)
			config = self.make_config(test_root, overwrite=False)

			results = ibackup.backup(config, veryquiet=True)
			self.assertTrue(results.success)
			self.assertEqual(results.exit_code, 0)
			self.assertEqual(results.indexed_files, 2)
			self.assertEqual(results.copy_success, 2)
			self.assertTrue(results.index_saved)
			self.assertRegex(results.destination.name, r"^\d{4}-\d{2}-\d{2}_")
			self.assertEqual(backed_up(results.destination, src / "a.txt").read_bytes(), b"x" * 10)
			self.assertEqual(backed_up(results.destination, src / "b.txt").read_bytes(), b"x" * 20)

			records, found = ibackup.IndexStore(config.index_file).load()
			self.assertTrue(found)
			self.assertEqual(len(records), 2)

			# without overwrite, every run is a full copy into a new folder
			second = ibackup.backup(config, veryquiet=True)
			self.assertEqual(second.copy_success, 2)
			self.assertEqual(len(os.listdir(config.backup_root)), 2)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_overwrite_unchanged(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src = self.make_source(test_root)
			config = self.make_config(test_root, overwrite=True)

			first = ibackup.backup(config, veryquiet=True)
			self.assertTrue(first.success)
			self.assertEqual(first.copy_success, 2)

			second = ibackup.backup(config, veryquiet=True)
			self.assertTrue(second.success)
			self.assertEqual(second.diff, ibackup.DiffResult(to_copy=[], to_delete=[]))
			self.assertEqual(second.copy_success, 0)
			self.assertEqual(second.delete_success, 0)
			self.assertFalse(first.destination.exists())
			self.assertEqual(os.listdir(config.backup_root), [second.destination.name])
			self.assertEqual(backed_up(second.destination, src / "a.txt").read_bytes(), b"x" * 10)
			self.assertEqual(backed_up(second.destination, src / "b.txt").read_bytes(), b"x" * 20)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_overwrite_changed(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src = self.make_source(test_root)
			config = self.make_config(test_root, overwrite=True)

			first = ibackup.backup(config, veryquiet=True)
			self.assertTrue(first.success)

			(src / "a.txt").write_bytes(b"y" * 15)
			(src / "b.txt").unlink()

			second = ibackup.backup(config, veryquiet=True)
			self.assertTrue(second.success)
			self.assertEqual([(r.path, r.size) for r in second.diff.to_copy], [(str(src / "a.txt"), 15)])
			self.assertEqual([(r.path, r.size) for r in second.diff.to_delete], [(str(src / "a.txt"), 10), (str(src / "b.txt"), 20)])
			self.assertEqual(second.warnings, [])
			self.assertEqual(backed_up(second.destination, src / "a.txt").read_bytes(), b"y" * 15)
			self.assertFalse(backed_up(second.destination, src / "b.txt").exists())

			records, _ = ibackup.IndexStore(config.index_file).load()
			self.assertEqual([(r.path, r.size) for r in records], [(str(src / "a.txt"), 15)])

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_overwrite_without_previous_folder(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src = self.make_source(test_root)
			config = self.make_config(test_root, overwrite=True)

			first = ibackup.backup(config, veryquiet=True)
			shutil.rmtree(first.destination)

			# the saved index is ignored when there is no folder to apply it to
			second = ibackup.backup(config, veryquiet=True)
			self.assertTrue(second.success)
			self.assertEqual(second.copy_success, 2)
			self.assertTrue(backed_up(second.destination, src / "b.txt").exists())

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_index_only(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			self.make_source(test_root)
			config = self.make_config(test_root, overwrite=True)

			results = ibackup.backup(config, index_only=True, veryquiet=True)
			self.assertTrue(results.success)
			self.assertIsNone(results.destination)
			self.assertFalse(config.backup_root.exists())
			records, found = ibackup.IndexStore(config.index_file).load()
			self.assertTrue(found)
			self.assertEqual(len(records), 2)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_fatal_errors(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			config = self.make_config(test_root, overwrite=True)

			# unreadable source
			results = ibackup.backup(config, veryquiet=True)
			self.assertFalse(results.success)
			self.assertEqual(results.exit_code, ibackup.DirectoryUnreadable.exit_code)
			self.assertFalse(config.index_file.exists())
			self.assertFalse(config.backup_root.exists())

			# corrupt index
			self.make_source(test_root)
			create_file_structure(config.backup_root, {
				"2025-01-01_aaaa": {},
			})
			config.index_file.write_text("{", encoding="utf-8")
			results = ibackup.backup(config, veryquiet=True)
			self.assertEqual(results.exit_code, ibackup.IndexCorrupt.exit_code)
			self.assertEqual(os.listdir(config.backup_root), ["2025-01-01_aaaa"])
			self.assertEqual(config.index_file.read_text(encoding="utf-8"), "{")

			# backup root is a file
			config.index_file.unlink()
			config = config._replace(backup_root=test_root / "src" / "a.txt")
			results = ibackup.backup(config, veryquiet=True)
			self.assertEqual(results.exit_code, ibackup.DestinationCreateFailed.exit_code)
			self.assertFalse(config.index_file.exists())

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_index_write_failure_is_not_fatal(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src = self.make_source(test_root)
			create_file_structure(test_root, {
				"not-a-dir": None,
			})
			config = self.make_config(test_root, overwrite=False)._replace(index_file=test_root / "not-a-dir" / "filesIndex.json")

			results = ibackup.backup(config, veryquiet=True)
			self.assertTrue(results.success)
			self.assertEqual(results.exit_code, 0)
			self.assertFalse(results.index_saved)
			self.assertEqual(len(results.errors), 1)
			self.assertTrue(backed_up(results.destination, src / "a.txt").exists())

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_config_file_and_log(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			src = self.make_source(test_root)
			config_file = test_root / "config.json"
			config_file.write_text(json.dumps({
				"backupRootDirectory": "backups",
				"sourceDirectories": ["src"],
			}), encoding="utf-8")
			log_file = test_root / "run.log"

			results = ibackup.backup(config_file, log=log_file, veryquiet=True)
			self.assertTrue(results.success)
			self.assertEqual(results.log_file, log_file)
			self.assertTrue((test_root / ibackup.DEFAULT_INDEX_FILE).exists())
			self.assertTrue(backed_up(results.destination, src / "a.txt").exists())
			log_text = log_file.read_text(encoding="utf-8")
			self.assertIn("Summary", log_text)
			self.assertIn(f"+ {src / 'a.txt'}", log_text)

			config_file.write_text("[]", encoding="utf-8")
			results = ibackup.backup(config_file, veryquiet=True)
			self.assertFalse(results.success)
			self.assertEqual(results.exit_code, ibackup.ConfigError.exit_code)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_cmd(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			self.make_source(test_root)
			config_file = test_root / "config.json"
			config_file.write_text(json.dumps({
				"backupRootDirectory": "backups",
				"sourceDirectories": ["src"],
				"overwritePreviousBackups": True,
			}), encoding="utf-8")
			index_file = test_root / "custom.json"

			results = ibackup.backup_cmd(["-c", str(config_file), "--index-file", str(index_file), "--build-index-only", "-qq"])
			self.assertTrue(results.success)
			self.assertTrue(index_file.exists())
			self.assertFalse((test_root / "backups").exists())

			with mock.patch.object(sys, "argv", ["ibackup", "-c", str(config_file), "-qq"]):
				with self.assertRaises(SystemExit) as cm:
					ibackup.main()
			self.assertEqual(cm.exception.code, 0)
			self.assertEqual(len(os.listdir(test_root / "backups")), 1)

			with mock.patch.object(sys, "argv", ["ibackup", "-c", str(test_root / "missing.json"), "-qq"]):
				with self.assertRaises(SystemExit) as cm:
					ibackup.main()
			self.assertEqual(cm.exception.code, ibackup.ConfigError.exit_code)

if __name__ == "__main__":
	try:
		unittest.main()
	except SystemExit as e:
		pass
