import os
import secrets

from cryptography.hazmat.primitives import constant_time

from asyshare import logger
from asyshare.common.constants import CODE_EXTENSION, CODE_LENGTH, CODE_ALPHABET, CODES_DIR_ENV
from asyshare.common.errors import ServerError


def get_codes_dir(codes_dir:str = None) -> str:
	if codes_dir:
		return codes_dir
	return os.environ.get(CODES_DIR_ENV) or '.'

def generate_code(length:int = CODE_LENGTH) -> str:
	return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))

def write_code_file(codes_dir:str = None, code:str = None, extension:str = CODE_EXTENSION):
	"""Writes a new one-time code artifact, returns (code, path)"""
	if code is None:
		code = generate_code()
	path = os.path.join(get_codes_dir(codes_dir), code + extension)
	with open(path, 'w') as f:
		f.write(code + '\n')
	return code, path


class CodeStore:
	"""
	One-time access codes, one code per file.
	A code is consumed by renaming its file away from the discoverable pattern,
	the rename is the serialization point between concurrent redeemers.
	"""
	def __init__(self, codes_dir:str = None, extension:str = CODE_EXTENSION):
		self.codes_dir = get_codes_dir(codes_dir)
		self.extension = extension

	def candidates(self):
		try:
			with os.scandir(self.codes_dir) as it:
				paths = [entry.path for entry in it if entry.name.endswith(self.extension) and entry.is_file()]
		except OSError as e:
			logger.error('Failed to read access codes from %s: %s' % (self.codes_dir, e))
			raise ServerError('Failed to read access codes', innerexception=e)
		return sorted(paths)

	def _claim(self, path:str) -> bool:
		claimed = '%s.%s.claimed' % (path, secrets.token_hex(4))
		try:
			os.rename(path, claimed)
		except FileNotFoundError:
			# someone else redeemed it first
			return False
		except OSError as e:
			logger.error('Failed to consume code file %s: %s' % (path, e))
			raise ServerError('Failed to consume access code', innerexception=e)

		try:
			os.remove(claimed)
		except OSError as e:
			logger.warning('Consumed code file could not be removed %s: %s' % (claimed, e))
		return True

	def redeem(self, candidate:str):
		"""
		Returns (True, '') when candidate matched an unused code, the code is
		gone by the time this returns. Otherwise (False, reason).
		"""
		candidate = (candidate or '').strip()
		if candidate == '':
			return False, 'missing code'

		candidate_bytes = candidate.encode('utf-8')
		for path in self.candidates():
			try:
				with open(path, 'rb') as f:
					code = f.read().strip()
			except OSError:
				continue
			if constant_time.bytes_eq(code, candidate_bytes) is False:
				continue
			if self._claim(path) is True:
				logger.info('Access code redeemed')
				return True, ''

		logger.info('Rejected access code attempt')
		return False, 'invalid code'
