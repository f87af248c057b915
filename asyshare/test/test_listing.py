import os
import re
import tempfile
import unittest

from asyshare.common.listing import list_directory, normalize_cwd


class TestListing(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = self.tmp.name

    def tearDown(self):
        self.tmp.cleanup()

    def test_file_and_directory(self):
        with open(os.path.join(self.root, 'a.txt'), 'wb') as f:
            f.write(b'0123456789')
        os.makedirs(os.path.join(self.root, 'sub'))

        entries = list_directory(self.root)
        self.assertEqual(len(entries), 2)
        by_name = {e.name: e.to_dict() for e in entries}

        self.assertEqual(by_name['a.txt']['type'], 'file')
        self.assertEqual(by_name['a.txt']['size'], 10)
        self.assertEqual(by_name['sub']['type'], 'dir')
        self.assertEqual(by_name['sub']['size'], 0)
        for item in by_name.values():
            self.assertRegex(item['mtime'], re.compile(r'^\d{4}-\d{2}-\d{2} \d{2}:\d{2}$'))

    def test_sorted_by_name(self):
        for name in ['c', 'a', 'b']:
            open(os.path.join(self.root, name), 'w').close()
        self.assertEqual([e.name for e in list_directory(self.root)], ['a', 'b', 'c'])

    def test_not_recursive(self):
        os.makedirs(os.path.join(self.root, 'sub', 'deeper'))
        open(os.path.join(self.root, 'sub', 'inner.txt'), 'w').close()
        self.assertEqual([e.name for e in list_directory(self.root)], ['sub'])

    def test_dangling_symlink(self):
        os.symlink(os.path.join(self.root, 'missing'), os.path.join(self.root, 'broken'))
        entries = list_directory(self.root)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].kind, 'file')

    def test_missing_directory(self):
        with self.assertRaises(OSError):
            list_directory(os.path.join(self.root, 'nope'))


class TestNormalizeCwd(unittest.TestCase):
    def test_normalize(self):
        self.assertEqual(normalize_cwd(''), '/')
        self.assertEqual(normalize_cwd('/'), '/')
        self.assertEqual(normalize_cwd('//'), '/')
        self.assertEqual(normalize_cwd(None), '/')
        self.assertEqual(normalize_cwd('uploads'), '/uploads/')
        self.assertEqual(normalize_cwd('/uploads/'), '/uploads/')
        self.assertEqual(normalize_cwd('a/b'), '/a/b/')


if __name__ == '__main__':
    unittest.main()
