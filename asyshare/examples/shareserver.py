#!/usr/bin/env python3
"""
Scoped file share server

Exposes one directory tree over HTTP for browsing and downloading.
Uploading requires a one-time access code (see asyshare-codegen) which is
exchanged for a short lived single-use token.

Usage:
    asyshare-server [root] [--host HOST] [--port PORT] [--static DIR] [--codes-dir DIR]

Example:
    asyshare-server ./files --host 127.0.0.1 --port 8080
"""

import asyncio
import logging
import os
import sys
import argparse

from asyshare import logger
from asyshare._version import __version__
from asyshare.common.constants import DEFAULT_ROOT_DIR, DEFAULT_STATIC_DIR, DEFAULT_HOST, DEFAULT_PORT, \
    TOKEN_TTL, TOKEN_SWEEP_INTERVAL, CODES_DIR_ENV
from asyshare.common.codestore import CodeStore
from asyshare.common.tokenstore import TokenStore
from asyshare.server.handler import FileShareHandler
from asyshare.server.httpserver import HTTPServer


async def run_share_server(root_dir=DEFAULT_ROOT_DIR, host=DEFAULT_HOST, port=DEFAULT_PORT, static_dir=None,
                           codes_dir=None, token_ttl=TOKEN_TTL, sweep_interval=TOKEN_SWEEP_INTERVAL,
                           body_timeout=None, debug=False):
    """
    Runs the share server until cancelled.

    Args:
        root_dir (str): Directory exposed to clients, created when missing
        host (str): Host to bind to
        port (int): Port to bind to
        static_dir (str): Directory holding the front-end assets (None = API only)
        codes_dir (str): Directory scanned for one-time code files (None = CODES_DIR env or cwd)
        token_ttl (float): Lifetime of an upload token in seconds
        sweep_interval (float): Seconds between expired token sweeps
        body_timeout (float): Idle timeout while reading an upload body (None = wait forever)
        debug (bool): Verbose connection tracing
    """
    log_callback = None
    if debug:
        async def log_callback(msg):
            logger.debug(msg)

    os.makedirs(root_dir, exist_ok=True)
    code_store = CodeStore(codes_dir)

    async with TokenStore(ttl=token_ttl, sweep_interval=sweep_interval) as token_store:
        handler_factory = lambda: FileShareHandler(
            root_dir,
            code_store,
            token_store,
            static_dir=static_dir,
            body_timeout=body_timeout,
        )
        server = HTTPServer(handler_factory, host, port, log_callback=log_callback)
        logger.info('Root directory: %s' % os.path.abspath(root_dir))
        logger.info('Code directory: %s' % os.path.abspath(code_store.codes_dir))
        try:
            await server.serve()
        finally:
            await server.terminate()


def main():
    parser = argparse.ArgumentParser(
        description='Scoped file share with one-time upload codes',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s                                   # Share ./files on 0.0.0.0:8080
  %(prog)s /srv/share --host 127.0.0.1      # Share a directory on localhost only
  %(prog)s /srv/share --codes-dir /run/codes # Read one-time codes from another directory
        ''')

    parser.add_argument('root', nargs='?', default=DEFAULT_ROOT_DIR, help='Directory to share (default: %s)' % DEFAULT_ROOT_DIR)
    parser.add_argument('--host', '-H', default=DEFAULT_HOST, help='Host to bind to (default: %s)' % DEFAULT_HOST)
    parser.add_argument('--port', '-p', type=int, default=DEFAULT_PORT, help='Port to bind to (default: %s)' % DEFAULT_PORT)
    parser.add_argument('--static', default=DEFAULT_STATIC_DIR, help='Front-end asset directory (default: %s)' % DEFAULT_STATIC_DIR)
    parser.add_argument('--codes-dir', help='Directory of *.code files (default: $%s or the working directory)' % CODES_DIR_ENV)
    parser.add_argument('--token-ttl', type=float, default=TOKEN_TTL, help='Upload token lifetime in seconds (default: %s)' % TOKEN_TTL)
    parser.add_argument('--sweep-interval', type=float, default=TOKEN_SWEEP_INTERVAL, help='Seconds between expired token sweeps (default: %s)' % TOKEN_SWEEP_INTERVAL)
    parser.add_argument('--body-timeout', type=float, help='Idle timeout in seconds while receiving an upload (default: none)')
    parser.add_argument('--debug', '-d', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', '-v', action='version', version='asyshare %s' % __version__)

    args = parser.parse_args()

    if args.port < 1 or args.port > 65535:
        print(f"Error: Port must be between 1 and 65535, got {args.port}")
        sys.exit(1)
    if args.token_ttl <= 0 or args.sweep_interval <= 0:
        print("Error: token-ttl and sweep-interval must be positive")
        sys.exit(1)
    if os.path.exists(args.root) and not os.path.isdir(args.root):
        print(f"Error: '{args.root}' is not a directory")
        sys.exit(1)

    if args.debug:
        logger.setLevel(logging.DEBUG)

    static_dir = args.static
    if static_dir and not os.path.isdir(static_dir):
        logger.info('Static directory %s not found, serving the API only' % static_dir)
        static_dir = None

    try:
        asyncio.run(run_share_server(
            args.root,
            args.host,
            args.port,
            static_dir=static_dir,
            codes_dir=args.codes_dir,
            token_ttl=args.token_ttl,
            sweep_interval=args.sweep_interval,
            body_timeout=args.body_timeout,
            debug=args.debug,
        ))
    except KeyboardInterrupt:
        print("\nServer stopped by user")
    except OSError as e:
        print(f"Failed to start server: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
