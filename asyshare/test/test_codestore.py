import os
import tempfile
import threading
import unittest
from unittest import mock

from asyshare.common.codestore import CodeStore, generate_code, write_code_file
from asyshare.common.constants import CODE_ALPHABET
from asyshare.common.errors import ServerError


class TestCodeStore(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.codes_dir = self.tmp.name
        self.store = CodeStore(self.codes_dir)

    def tearDown(self):
        self.tmp.cleanup()

    def write_code(self, code, filename=None):
        path = os.path.join(self.codes_dir, filename or code + '.code')
        with open(path, 'w') as f:
            f.write(code + '\n')
        return path

    def test_redeem_once(self):
        path = self.write_code('AB12CD34')
        self.assertEqual(self.store.redeem('AB12CD34'), (True, ''))
        self.assertFalse(os.path.exists(path))
        self.assertEqual(os.listdir(self.codes_dir), [])

        for _ in range(3):
            self.assertEqual(self.store.redeem('AB12CD34'), (False, 'invalid code'))

    def test_whitespace_is_ignored(self):
        self.write_code('AB12CD34')
        self.assertEqual(self.store.redeem('  AB12CD34\n'), (True, ''))

    def test_missing_code(self):
        self.write_code('AB12CD34')
        self.assertEqual(self.store.redeem(''), (False, 'missing code'))
        self.assertEqual(self.store.redeem('   '), (False, 'missing code'))
        self.assertEqual(self.store.redeem(None), (False, 'missing code'))

    def test_wrong_code_keeps_artifact(self):
        path = self.write_code('AB12CD34')
        self.assertEqual(self.store.redeem('AB12CD35'), (False, 'invalid code'))
        self.assertEqual(self.store.redeem('AB12CD3'), (False, 'invalid code'))
        self.assertTrue(os.path.exists(path))

    def test_matches_content_not_filename(self):
        path = self.write_code('ZZZZ9999', filename='anything.code')
        self.write_code('ignored', filename='ignored.txt')
        self.assertEqual(self.store.redeem('ignored'), (False, 'invalid code'))
        self.assertEqual(self.store.redeem('ZZZZ9999'), (True, ''))
        self.assertFalse(os.path.exists(path))

    def test_only_matching_code_consumed(self):
        self.write_code('AAAA1111')
        other = self.write_code('BBBB2222')
        self.assertEqual(self.store.redeem('AAAA1111'), (True, ''))
        self.assertTrue(os.path.exists(other))
        self.assertEqual(self.store.redeem('BBBB2222'), (True, ''))

    def test_lost_race_is_not_granted(self):
        self.write_code('AB12CD34')
        with mock.patch('asyshare.common.codestore.os.rename', side_effect=FileNotFoundError()):
            self.assertEqual(self.store.redeem('AB12CD34'), (False, 'invalid code'))

    def test_claim_failure_raises(self):
        path = self.write_code('AB12CD34')
        with mock.patch('asyshare.common.codestore.os.rename', side_effect=PermissionError(13, 'Permission denied')):
            with self.assertRaises(ServerError):
                self.store.redeem('AB12CD34')
        self.assertTrue(os.path.exists(path))

    def test_delete_failure_is_tolerated(self):
        self.write_code('AB12CD34')
        with mock.patch('asyshare.common.codestore.os.remove', side_effect=PermissionError(13, 'Permission denied')):
            self.assertEqual(self.store.redeem('AB12CD34'), (True, ''))
        # the claimed file no longer matches the code pattern
        self.assertEqual(self.store.redeem('AB12CD34'), (False, 'invalid code'))

    def test_concurrent_redeem_grants_once(self):
        self.write_code('AB12CD34')
        barrier = threading.Barrier(16)
        results = []

        def redeem():
            barrier.wait()
            results.append(self.store.redeem('AB12CD34'))

        threads = [threading.Thread(target=redeem) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(results), 16)
        self.assertEqual(results.count((True, '')), 1)
        self.assertEqual(results.count((False, 'invalid code')), 15)
        self.assertEqual(os.listdir(self.codes_dir), [])

    def test_missing_codes_dir_raises(self):
        store = CodeStore(os.path.join(self.codes_dir, 'nope'))
        with self.assertRaises(ServerError) as ctx:
            store.redeem('AB12CD34')
        self.assertIsInstance(ctx.exception.innerexception, FileNotFoundError)

    def test_hidden_code_files_are_found(self):
        self.write_code('AB12CD34', filename='.hidden.code')
        os.mkdir(os.path.join(self.codes_dir, 'dir.code'))
        self.assertEqual(self.store.redeem('AB12CD34'), (True, ''))
        self.assertEqual(os.listdir(self.codes_dir), ['dir.code'])

    def test_codes_dir_from_environment(self):
        self.write_code('AB12CD34')
        with mock.patch.dict(os.environ, {'CODES_DIR': self.codes_dir}):
            store = CodeStore()
        self.assertEqual(store.codes_dir, self.codes_dir)
        self.assertEqual(store.redeem('AB12CD34'), (True, ''))

    def test_generate_and_write(self):
        code = generate_code()
        self.assertEqual(len(code), 8)
        self.assertTrue(all(c in CODE_ALPHABET for c in code))
        self.assertEqual(len(generate_code(12)), 12)

        code, path = write_code_file(self.codes_dir)
        self.assertEqual(path, os.path.join(self.codes_dir, code + '.code'))
        with open(path) as f:
            self.assertEqual(f.read(), code + '\n')
        self.assertEqual(self.store.redeem(code), (True, ''))


if __name__ == '__main__':
    unittest.main()
