"""
HTTP front for the share: directory listing, downloads, code check and uploads.
Read paths need no token, uploads need a token obtained by redeeming a one-time code.
"""

import asyncio
import json
import mimetypes
import os
import posixpath
import urllib.parse

import h11

from asyshare import logger
from asyshare.common.confine import confine
from asyshare.common.constants import ROUTE_LIST, ROUTE_DOWNLOAD, ROUTE_CHECKCODE, ROUTE_UPLOAD, \
    DOWNLOAD_CHUNK_SIZE
from asyshare.common.errors import ShareError, InputError, Forbidden, NotFound, RangeNotSatisfiable, ServerError
from asyshare.common.listing import list_directory, normalize_cwd
from asyshare.common.codestore import CodeStore
from asyshare.common.tokenstore import TokenStore
from asyshare.server.httpserver import HTTPServerHandler
from asyshare.server.multipart import MultipartStreamProcessor, parse_boundary


def get_header(headers, name:bytes):
    for hname, value in headers:
        if hname.lower() == name:
            return value.decode('latin-1')
    return None

def parse_range(range_header:str, file_size:int):
    """
    Parses a single `bytes=` range.
    Returns (start, end) inclusive, None to serve the whole file,
    raises RangeNotSatisfiable when the range cannot be served.
    """
    if not range_header or not range_header.startswith('bytes='):
        return None
    range_spec = range_header[6:].strip()
    if ',' in range_spec or '-' not in range_spec:
        # multiple ranges are not supported, fall back to the full body
        return None
    start, end = range_spec.split('-', 1)
    try:
        if start == '':
            suffix = int(end)
            if suffix <= 0 or file_size == 0:
                raise RangeNotSatisfiable(file_size)
            return max(file_size - suffix, 0), file_size - 1
        start_byte = int(start)
        end_byte = int(end) if end else file_size - 1
    except ValueError:
        return None
    if start_byte >= file_size or end_byte < start_byte:
        raise RangeNotSatisfiable(file_size)
    return start_byte, min(end_byte, file_size - 1)

def content_disposition(filename:str) -> bytes:
    ascii_name = filename.encode('ascii', 'replace').decode('ascii').replace('"', '_').replace('\\', '_')
    value = 'attachment; filename="%s"' % ascii_name
    if ascii_name != filename:
        value += "; filename*=UTF-8''%s" % urllib.parse.quote(filename, safe='')
    return value.encode('ascii')


class FileShareHandler(HTTPServerHandler):
    """
    Serves one connection. The stores are shared between every connection of
    the server, the handler itself only holds per-request state.
    """

    def __init__(self, root_dir:str, code_store:CodeStore, token_store:TokenStore, static_dir:str = None, body_timeout:float = None):
        super().__init__()
        self.root_dir = os.path.abspath(root_dir)
        self.code_store = code_store
        self.token_store = token_store
        self.static_dir = static_dir
        self.body_timeout = body_timeout

    async def _process_request(self, wrapper, request:h11.Request):
        try:
            await super()._process_request(wrapper, request)
        except (ConnectionError, h11.ProtocolError):
            raise
        except ShareError as e:
            if e.status >= 500:
                logger.error('%s %s -> %s %s' % (request.method.decode(), request.target.decode('latin-1'), e.status, e))
            await self._send_error(e)
        except Exception as e:
            logger.exception('%s %s failed' % (request.method.decode(), request.target.decode('latin-1')))
            await self._send_error(ServerError(str(e), innerexception=e))

    async def _send_error(self, error:ShareError):
        if self._wrapper.response_started:
            # headers are already out, the only signal left is dropping the connection
            raise error
        extra_headers = None
        if isinstance(error, RangeNotSatisfiable):
            extra_headers = [("Content-Range", ("bytes */%s" % error.file_size).encode("ascii"))]
        await self._send_json(error.status, {'ok': False, 'error': error.message}, extra_headers)

    async def _send_json(self, status_code:int, obj, extra_headers=None):
        body = json.dumps(obj, ensure_ascii=False).encode('utf-8')
        await self.send_bytes(status_code, body, 'application/json; charset=utf-8', extra_headers)

    def _parse_target(self, event:h11.Request):
        url_parts = urllib.parse.urlsplit(event.target.decode('latin-1'))
        path = urllib.parse.unquote(url_parts.path)
        query_params = urllib.parse.parse_qs(url_parts.query, keep_blank_values=True)
        return path, query_params

    @staticmethod
    def _param(query_params, name:str, default:str = ''):
        values = query_params.get(name)
        if not values:
            return default
        return values[0]

    async def do_GET(self, event:h11.Request):
        path, query_params = self._parse_target(event)
        if path == ROUTE_LIST:
            await self._serve_list(self._param(query_params, 'dir', '/'))
        elif path == ROUTE_DOWNLOAD:
            await self._serve_file(self._param(query_params, 'path'), event.headers)
        elif path == ROUTE_CHECKCODE:
            await self._check_code(self._param(query_params, 'code'), self._param(query_params, 'dir'))
        elif path == ROUTE_UPLOAD:
            raise ShareError('Method Not Allowed', status=405)
        else:
            await self._serve_static(path, event.headers)

    async def do_HEAD(self, event:h11.Request):
        path, query_params = self._parse_target(event)
        if path == ROUTE_DOWNLOAD:
            await self._serve_file(self._param(query_params, 'path'), event.headers, head_only=True)
        elif path in (ROUTE_LIST, ROUTE_CHECKCODE, ROUTE_UPLOAD):
            raise ShareError('Method Not Allowed', status=405)
        else:
            await self._serve_static(path, event.headers, head_only=True)

    async def do_POST(self, event:h11.Request):
        path, query_params = self._parse_target(event)
        if path != ROUTE_UPLOAD:
            raise ShareError('Method Not Allowed', status=405)
        await self._handle_upload(
            event,
            self._param(query_params, 'dir'),
            self._param(query_params, 'token'),
        )

    async def _serve_list(self, dir_path:str):
        safe_path = confine(self.root_dir, dir_path)
        if not os.path.isdir(safe_path):
            raise NotFound('Directory not found')
        try:
            entries = await asyncio.to_thread(list_directory, safe_path)
        except OSError as e:
            raise ServerError('Failed to list directory: %s' % e.strerror, innerexception=e)

        await self._send_json(200, {
            'ok': True,
            'cwd': normalize_cwd(dir_path),
            'items': [entry.to_dict() for entry in entries],
        })

    async def _serve_file(self, file_path:str, request_headers, head_only:bool = False):
        if not file_path:
            raise InputError('missing path')
        safe_path = confine(self.root_dir, file_path)
        await self._stream_file(safe_path, request_headers, head_only, as_attachment=True)

    async def _serve_static(self, path:str, request_headers, head_only:bool = False):
        if not self.static_dir:
            raise NotFound('Not found')
        if path.endswith('/'):
            path += 'index.html'
        safe_path = confine(self.static_dir, path)
        await self._stream_file(safe_path, request_headers, head_only, as_attachment=False)

    async def _stream_file(self, safe_path:str, request_headers, head_only:bool, as_attachment:bool):
        if not os.path.exists(safe_path):
            raise NotFound('File not found')
        if not os.path.isfile(safe_path):
            raise InputError('Not a file')

        try:
            f = open(safe_path, 'rb')
        except OSError as e:
            raise ServerError('Cannot open file: %s' % e.strerror, innerexception=e)

        with f:
            file_size = os.fstat(f.fileno()).st_size
            mime_type, _ = mimetypes.guess_type(safe_path)
            mime_type = mime_type or 'application/octet-stream'

            status_code = 200
            start_byte, end_byte = 0, file_size - 1
            byte_range = parse_range(get_header(request_headers, b'range'), file_size)
            if byte_range is not None:
                start_byte, end_byte = byte_range
                status_code = 206
            content_length = end_byte - start_byte + 1

            headers = self.basic_headers()
            headers.extend([
                ("Content-Type", mime_type.encode("ascii")),
                ("Content-Length", str(content_length).encode("ascii")),
                ("Accept-Ranges", b"bytes"),
            ])
            if as_attachment:
                headers.append(("Content-Disposition", content_disposition(os.path.basename(safe_path))))
            if status_code == 206:
                headers.append(("Content-Range", f"bytes {start_byte}-{end_byte}/{file_size}".encode("ascii")))

            await self._wrapper.send(h11.Response(status_code=status_code, headers=headers))
            if head_only is False:
                if start_byte > 0:
                    f.seek(start_byte)
                bytes_remaining = content_length
                while bytes_remaining > 0:
                    chunk = await asyncio.to_thread(f.read, min(DOWNLOAD_CHUNK_SIZE, bytes_remaining))
                    if not chunk:
                        # file shrank under us, the declared length can no longer be honored
                        raise ServerError('File changed while sending')
                    await self._wrapper.send(h11.Data(data=chunk))
                    bytes_remaining -= len(chunk)
            await self._wrapper.send(h11.EndOfMessage())

    async def _check_code(self, code:str, dir_path:str):
        # refuse to hand out a token for a directory that could never be written
        confine(self.root_dir, dir_path)
        ok, reason = await asyncio.to_thread(self.code_store.redeem, code)
        if ok is False:
            raise Forbidden(reason)
        token = self.token_store.issue()
        await self._send_json(200, {'ok': True, 'token': token})

    async def _read_body_chunk(self):
        if self.body_timeout is None:
            event = await self._wrapper.next_event()
        else:
            try:
                event = await asyncio.wait_for(self._wrapper.next_event(), timeout=self.body_timeout)
            except asyncio.TimeoutError:
                raise InputError('Upload timeout')

        if isinstance(event, h11.Data):
            return event.data
        if isinstance(event, h11.EndOfMessage):
            return None
        raise ConnectionError('Unexpected event while reading upload: %s' % type(event).__name__)

    async def _handle_upload(self, event:h11.Request, dir_path:str, token:str):
        if not dir_path:
            raise InputError('missing dir')
        if self.token_store.redeem(token) is False:
            raise Forbidden('invalid token')
        safe_target_path = confine(self.root_dir, dir_path)

        boundary = parse_boundary(get_header(event.headers, b'content-type'))
        if boundary is None:
            raise InputError('Content-Type must be multipart/form-data')

        processor = MultipartStreamProcessor(boundary, safe_target_path)
        try:
            while True:
                chunk = await self._read_body_chunk()
                if chunk is None:
                    break
                await processor.process_chunk(chunk)
            saved = await processor.finalize()
        except h11.RemoteProtocolError as e:
            await processor.cleanup()
            raise ConnectionError('Client went away during upload: %s' % e)
        except BaseException:
            # includes cancellation when the connection is torn down
            await processor.cleanup()
            raise

        if saved is None:
            raise InputError('no file field "file" received')

        url_path = posixpath.join(normalize_cwd(dir_path), saved['filename'])
        await self._send_json(200, {
            'ok': True,
            'saved_as': saved['filename'],
            'url': '%s?path=%s' % (ROUTE_DOWNLOAD, urllib.parse.quote(url_path, safe='/')),
        })
