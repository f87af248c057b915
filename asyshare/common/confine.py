import os
import posixpath

from asyshare.common.errors import Forbidden, InputError


# most filesystems cap a single path component at 255 bytes
MAX_NAME_BYTES = 255
MAX_EXT_BYTES = 16


def confine(root:str, relative_input:str) -> str:
	"""
	Resolves a client supplied path against root.
	`..` segments that would climb above the root are refused outright, the input is
	then treated as rooted and the real absolute result is checked to lie within
	the real absolute root, so symlinks cannot lead out either.

	Returns the absolute path, raises Forbidden if the result escapes the root.
	"""
	if relative_input is None:
		relative_input = ''
	if '\x00' in relative_input:
		raise InputError('Invalid path')

	normalized = relative_input.replace('\\', '/')
	depth = 0
	for segment in normalized.split('/'):
		if segment in ('', '.'):
			continue
		if segment == '..':
			depth -= 1
			if depth < 0:
				raise Forbidden('Access outside of the shared directory is not allowed')
		else:
			depth += 1

	clean = posixpath.normpath('/' + normalized)
	# normpath keeps a leading double slash, posix says it is implementation defined
	clean = clean.lstrip('/')

	root_abs = os.path.realpath(root)
	full = os.path.realpath(os.path.join(root_abs, *clean.split('/')))
	if full != root_abs and not full.startswith(root_abs.rstrip(os.sep) + os.sep):
		raise Forbidden('Access outside of the shared directory is not allowed')
	return full

def sanitize_filename(filename:str) -> str:
	"""Strips every directory component from a client supplied file name"""
	if not filename:
		return ''
	name = filename.replace('\\', '/').split('/')[-1]
	name = name.replace('\x00', '').strip()
	if name in ('.', '..'):
		return ''
	if len(name.encode('utf-8')) > MAX_NAME_BYTES:
		name_part, ext_part = os.path.splitext(name)
		ext_bytes = ext_part.encode('utf-8')
		if len(ext_bytes) > MAX_EXT_BYTES:
			name_part, ext_bytes = name, b''
		# cut on bytes, a split multibyte character is dropped
		name_bytes = name_part.encode('utf-8')[:MAX_NAME_BYTES - len(ext_bytes)]
		name = name_bytes.decode('utf-8', 'ignore') + ext_bytes.decode('utf-8')
	return name
