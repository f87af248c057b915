
class ShareError(Exception):
	"""Base for errors that map onto an HTTP status."""
	status = 500

	def __init__(self, message = 'Internal server error', status = None):
		self.message = message
		if status is not None:
			self.status = status
		super().__init__(self.message)

class InputError(ShareError):
	"""Missing or malformed request parameters."""
	status = 400

class Forbidden(ShareError):
	"""A security boundary was hit: traversal, bad code or bad token."""
	status = 403

class NotFound(ShareError):
	status = 404

class RangeNotSatisfiable(ShareError):
	status = 416

	def __init__(self, file_size, message = 'Requested range not satisfiable'):
		self.file_size = file_size
		super().__init__(message)

class ServerError(ShareError):
	status = 500

	def __init__(self, message = 'Internal server error', innerexception = None):
		self.innerexception = innerexception
		super().__init__(message)
