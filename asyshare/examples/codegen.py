#!/usr/bin/env python3
"""
Writes a fresh one-time access code as <code>.code and prints the code.
The share server consumes the file the first time the code is redeemed.
"""

import sys
import argparse

from asyshare.common.constants import CODE_LENGTH, CODES_DIR_ENV
from asyshare.common.codestore import generate_code, write_code_file


def main():
    parser = argparse.ArgumentParser(description='Generate a one-time upload code')
    parser.add_argument('--length', '-l', type=int, default=CODE_LENGTH, help='Code length (default: %s)' % CODE_LENGTH)
    parser.add_argument('--dir', help='Where to write the code file (default: $%s or the working directory)' % CODES_DIR_ENV)
    args = parser.parse_args()

    if args.length < 4:
        print('Error: length must be at least 4', file=sys.stderr)
        sys.exit(1)

    try:
        code, _ = write_code_file(args.dir, generate_code(args.length))
    except OSError as e:
        print(f'Failed to write code file: {e}', file=sys.stderr)
        sys.exit(1)
    print(code)


if __name__ == '__main__':
    main()
