
# API routes, prefixed so they never collide with a static asset
ROUTE_LIST = '/__fs_list'
ROUTE_DOWNLOAD = '/__fs_download'
ROUTE_CHECKCODE = '/__fs_checkcode'
ROUTE_UPLOAD = '/__fs_upload'

UPLOAD_FIELD = 'file'

CODE_EXTENSION = '.code'
CODE_LENGTH = 8
CODE_ALPHABET = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789'
CODES_DIR_ENV = 'CODES_DIR'

TOKEN_BYTES = 16
TOKEN_TTL = 120
TOKEN_SWEEP_INTERVAL = 60

DEFAULT_ROOT_DIR = './files'
DEFAULT_STATIC_DIR = './static'
DEFAULT_HOST = '0.0.0.0'
DEFAULT_PORT = 8080

RECV_SIZE = 64 * 1024
# unread request body accepted after an early response before the connection is dropped
MAX_DRAIN = 1024 * 1024
DOWNLOAD_CHUNK_SIZE = 512 * 1024
MTIME_FORMAT = '%Y-%m-%d %H:%M'
