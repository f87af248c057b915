import os
import datetime

from asyshare.common.constants import MTIME_FORMAT


class DirectoryEntry:
	def __init__(self, name:str, kind:str, size:int, mtime:str):
		self.name = name
		self.kind = kind
		self.size = size
		self.mtime = mtime

	@staticmethod
	def from_dir_entry(entry:os.DirEntry):
		try:
			st = entry.stat()
		except OSError:
			# dangling symlink
			st = entry.stat(follow_symlinks=False)

		is_dir = entry.is_dir()
		return DirectoryEntry(
			entry.name,
			'dir' if is_dir else 'file',
			0 if is_dir else st.st_size,
			datetime.datetime.fromtimestamp(st.st_mtime).strftime(MTIME_FORMAT),
		)

	def to_dict(self):
		return {
			'name' : self.name,
			'type' : self.kind,
			'size' : self.size,
			'mtime' : self.mtime,
		}

	def __repr__(self):
		return 'DirectoryEntry(%r, %r, %r, %r)' % (self.name, self.kind, self.size, self.mtime)


def list_directory(abs_dir:str):
	"""Non-recursive listing of an already confined directory, sorted by name"""
	with os.scandir(abs_dir) as it:
		entries = [DirectoryEntry.from_dir_entry(entry) for entry in it]
	entries.sort(key=lambda e: e.name)
	return entries

def normalize_cwd(dir_path:str) -> str:
	"""Client facing directory string, always starts and ends with a separator"""
	stripped = (dir_path or '').replace('\\', '/').strip('/')
	if stripped == '':
		return '/'
	return '/' + stripped + '/'
