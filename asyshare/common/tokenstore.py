import time
import asyncio
import secrets
import threading

from asyshare import logger
from asyshare.common.constants import TOKEN_BYTES, TOKEN_TTL, TOKEN_SWEEP_INTERVAL


class TokenStore:
	"""
	In-memory single-use session tokens.
	A token is valid until it is redeemed once or its expiry passes.
	"""
	def __init__(self, ttl:float = TOKEN_TTL, sweep_interval:float = TOKEN_SWEEP_INTERVAL, clock = time.monotonic):
		self.ttl = ttl
		self.sweep_interval = sweep_interval
		self.clock = clock
		self.__tokens = {}
		self.__lock = threading.Lock()
		self.__sweeper_task = None

	async def __aenter__(self):
		self.start()
		return self

	async def __aexit__(self, exc_type, exc, tb):
		await self.stop()

	def __len__(self):
		with self.__lock:
			return len(self.__tokens)

	def issue(self, ttl:float = None) -> str:
		if ttl is None:
			ttl = self.ttl
		token = secrets.token_hex(TOKEN_BYTES)
		expire_at = self.clock() + ttl
		with self.__lock:
			self.__tokens[token] = expire_at
		logger.debug('Token issued, valid for %ss' % ttl)
		return token

	def redeem(self, token:str) -> bool:
		if not token:
			return False
		now = self.clock()
		with self.__lock:
			expire_at = self.__tokens.pop(token, None)
		if expire_at is None:
			return False
		if now > expire_at:
			logger.debug('Expired token presented')
			return False
		return True

	def sweep(self) -> int:
		now = self.clock()
		with self.__lock:
			expired = [token for token, expire_at in self.__tokens.items() if now > expire_at]
			for token in expired:
				del self.__tokens[token]
		if len(expired) > 0:
			logger.debug('Sweeper evicted %s expired tokens' % len(expired))
		return len(expired)

	async def __sweeper(self):
		while True:
			await asyncio.sleep(self.sweep_interval)
			self.sweep()

	def start(self):
		if self.__sweeper_task is None:
			self.__sweeper_task = asyncio.create_task(self.__sweeper())

	async def stop(self):
		if self.__sweeper_task is None:
			return
		self.__sweeper_task.cancel()
		try:
			await self.__sweeper_task
		except asyncio.CancelledError:
			pass
		self.__sweeper_task = None
