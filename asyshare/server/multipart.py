import asyncio
import os
import re
import secrets

from asyshare import logger
from asyshare.common.confine import sanitize_filename
from asyshare.common.constants import UPLOAD_FIELD
from asyshare.common.errors import InputError, ServerError


PARAM_RE = re.compile(r';\s*([A-Za-z0-9_\-\*]+)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^;\s]*))')
BOUNDARY_RE = re.compile(r'boundary=(?:"([^"]+)"|([^;\s]+))', re.IGNORECASE)
MAX_HEADER_SIZE = 16 * 1024


def parse_boundary(content_type:str) -> bytes:
    """Returns the raw boundary from a multipart Content-Type or None"""
    if not content_type:
        return None
    media_type = content_type.split(';', 1)[0].strip().lower()
    if not media_type.startswith('multipart/'):
        return None
    m = BOUNDARY_RE.search(content_type)
    if m is None:
        return None
    boundary = m.group(1) or m.group(2)
    try:
        return boundary.encode('ascii')
    except UnicodeEncodeError:
        return None

def parse_part_headers(header_section:bytes):
    """
    Parses the header block of one part.
    Returns (form_name, filename), either may be None.
    """
    try:
        headers_text = header_section.decode('utf-8')
    except UnicodeDecodeError:
        headers_text = header_section.decode('latin-1')

    for line in headers_text.split('\r\n'):
        key, _, value = line.partition(':')
        if key.strip().lower() != 'content-disposition':
            continue
        params = {}
        for m in PARAM_RE.finditer(value):
            pvalue = m.group(2)
            if pvalue is None:
                pvalue = m.group(3)
            else:
                pvalue = re.sub(r'\\(.)', r'\1', pvalue)
            params[m.group(1).lower()] = pvalue
        return params.get('name'), params.get('filename')
    return None, None


class MultipartStreamProcessor:
    """
    Incremental multipart/form-data parser.
    Feeds the first part named `field_name` straight to disk, every other part is
    drained. Memory use is bounded by one chunk plus a delimiter sized tail.
    """

    def __init__(self, boundary_bytes:bytes, target_path:str, field_name:str = UPLOAD_FIELD, opener = open):
        self.target_path = target_path
        self.field_name = field_name
        self.opener = opener

        self.delimiter = b'\r\n--' + boundary_bytes
        # a leading CRLF lets the first boundary match like every later one
        self.buffer = b'\r\n'
        self.state = 'preamble'  # 'preamble', 'delimiter', 'headers', 'body', 'epilogue'

        self.current_file_info = None
        self.current_file_handle = None
        self.saved_file = None

    async def process_chunk(self, chunk:bytes):
        self.buffer += chunk
        while True:
            if self.state == 'preamble':
                pos = self.buffer.find(self.delimiter)
                if pos == -1:
                    self.buffer = self.buffer[-(len(self.delimiter) - 1):]
                    return
                self.buffer = self.buffer[pos + len(self.delimiter):]
                self.state = 'delimiter'

            elif self.state == 'delimiter':
                if not await self._process_delimiter():
                    return

            elif self.state == 'headers':
                if not await self._process_headers():
                    return

            elif self.state == 'body':
                if not await self._process_body():
                    return

            elif self.state == 'epilogue':
                self.buffer = b''
                return

    async def _process_delimiter(self):
        # transport padding may follow the boundary before the line break
        line_end = self.buffer.find(b'\r\n')
        if self.buffer.startswith(b'--'):
            self.buffer = b''
            self.state = 'epilogue'
            return True
        if line_end == -1:
            if len(self.buffer) > 1024:
                raise InputError('Malformed multipart boundary line')
            return False
        if self.buffer[:line_end].strip(b' \t') != b'':
            raise InputError('Malformed multipart boundary line')
        self.buffer = self.buffer[line_end + 2:]
        self.state = 'headers'
        return True

    async def _process_headers(self):
        if self.buffer.startswith(b'\r\n'):
            header_section = b''
            self.buffer = self.buffer[2:]
        else:
            header_end = self.buffer.find(b'\r\n\r\n')
            if header_end == -1:
                if len(self.buffer) > MAX_HEADER_SIZE:
                    raise InputError('Multipart part headers too long or malformed')
                return False
            header_section = self.buffer[:header_end]
            self.buffer = self.buffer[header_end + 4:]

        name, filename = parse_part_headers(header_section)
        if name == self.field_name and self.saved_file is None:
            safe_filename = sanitize_filename(filename)
            if not safe_filename:
                raise InputError('missing file name')
            await self._start_new_file(safe_filename)
        self.state = 'body'
        return True

    async def _process_body(self):
        pos = self.buffer.find(self.delimiter)
        if pos == -1:
            keep = len(self.delimiter) - 1
            if len(self.buffer) > keep:
                data = self.buffer[:-keep]
                self.buffer = self.buffer[-keep:]
                await self._write_file_data(data)
            return False

        data = self.buffer[:pos]
        self.buffer = self.buffer[pos + len(self.delimiter):]
        await self._write_file_data(data)
        await self._finalize_current_file()
        self.state = 'delimiter'
        return True

    async def _start_new_file(self, filename:str):
        file_path = os.path.join(self.target_path, filename)
        temp_path = os.path.join(self.target_path, '.upload.%s.uploading' % secrets.token_hex(8))
        try:
            self.current_file_handle = await asyncio.to_thread(self.opener, temp_path, 'wb')
        except OSError as e:
            raise ServerError('Cannot create upload file: %s' % e.strerror, innerexception=e)

        self.current_file_info = {
            'filename': filename,
            'temp_path': temp_path,
            'final_path': file_path,
            'size': 0,
        }
        logger.info('[UPLOAD] Receiving %s' % file_path)

    async def _write_file_data(self, data:bytes):
        # parts that are not being saved are drained here
        if self.current_file_handle is None or not data:
            return
        try:
            await asyncio.to_thread(self.current_file_handle.write, data)
        except OSError as e:
            raise ServerError('Error writing upload: %s' % e.strerror, innerexception=e)
        self.current_file_info['size'] += len(data)

    async def _finalize_current_file(self):
        if self.current_file_handle is None:
            return
        handle = self.current_file_handle
        self.current_file_handle = None
        info = self.current_file_info
        try:
            await asyncio.to_thread(handle.close)
            os.replace(info['temp_path'], info['final_path'])
        except OSError as e:
            self._remove_temp(info['temp_path'])
            self.current_file_info = None
            raise ServerError('Error storing upload: %s' % e.strerror, innerexception=e)

        self.current_file_info = None
        self.saved_file = {
            'filename': info['filename'],
            'size': info['size'],
            'path': info['final_path'],
        }
        logger.info('[UPLOAD] Stored %s (%s bytes)' % (info['final_path'], info['size']))

    async def finalize(self):
        """Call once the request body has ended, returns the saved file info or None"""
        if self.state != 'epilogue':
            raise InputError('Unexpected end of multipart body')
        return self.saved_file

    def _remove_temp(self, temp_path:str):
        try:
            os.unlink(temp_path)
            logger.info('[UPLOAD] Removed partial upload %s' % temp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error('[UPLOAD] Could not remove partial upload %s: %s' % (temp_path, e))

    async def cleanup(self):
        """Drops any partially written file"""
        if self.current_file_handle is not None:
            try:
                self.current_file_handle.close()
            except OSError:
                pass
            self.current_file_handle = None
        if self.current_file_info is not None:
            self._remove_temp(self.current_file_info['temp_path'])
            self.current_file_info = None
