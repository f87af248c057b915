import os
import tempfile
import unittest

from asyshare.common.confine import confine, sanitize_filename
from asyshare.common.errors import Forbidden, InputError


class TestConfine(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = os.path.join(self.tmp.name, 'files')
        os.makedirs(os.path.join(self.root, 'uploads'))
        self.root_real = os.path.realpath(self.root)

    def tearDown(self):
        self.tmp.cleanup()

    def test_root_variants(self):
        for value in ['', '/', '.', '//', None]:
            self.assertEqual(confine(self.root, value), self.root_real)

    def test_inner_paths(self):
        self.assertEqual(confine(self.root, '/uploads'), os.path.join(self.root_real, 'uploads'))
        self.assertEqual(confine(self.root, 'uploads/x.bin'), os.path.join(self.root_real, 'uploads', 'x.bin'))
        self.assertEqual(confine(self.root, '/uploads/../uploads/./x.bin'), os.path.join(self.root_real, 'uploads', 'x.bin'))

    def test_traversal_rejected(self):
        for value in ['../../etc/passwd', '..', '/../files', 'uploads/../../x', '..\\..\\windows', 'a/../../b']:
            with self.assertRaises(Forbidden, msg=value):
                confine(self.root, value)

    def test_sibling_prefix_rejected(self):
        os.makedirs(self.root + '2')
        with self.assertRaises(Forbidden):
            confine(self.root, '../files2/secret')

    def test_symlink_escape_rejected(self):
        outside = os.path.join(self.tmp.name, 'outside')
        os.makedirs(outside)
        os.symlink(outside, os.path.join(self.root, 'link'))
        with self.assertRaises(Forbidden):
            confine(self.root, 'link/secret.txt')

    def test_nul_byte(self):
        with self.assertRaises(InputError):
            confine(self.root, 'uploads/a\x00b')


class TestSanitizeFilename(unittest.TestCase):
    def test_strips_directories(self):
        self.assertEqual(sanitize_filename('../../evil.sh'), 'evil.sh')
        self.assertEqual(sanitize_filename('/etc/passwd'), 'passwd')
        self.assertEqual(sanitize_filename('C:\\Users\\me\\report.pdf'), 'report.pdf')
        self.assertEqual(sanitize_filename('x.bin'), 'x.bin')

    def test_empty_results(self):
        for value in [None, '', '..', '.', 'dir/', '../']:
            self.assertEqual(sanitize_filename(value), '', msg=value)

    def test_long_name_truncated(self):
        name = sanitize_filename('a' * 300 + '.txt')
        self.assertLessEqual(len(name), 255)
        self.assertTrue(name.endswith('.txt'))

        self.assertEqual(sanitize_filename('b' * 250 + '.txt'), 'b' * 250 + '.txt')

    def test_long_name_truncated_by_bytes(self):
        name = sanitize_filename('文' * 100 + '.pdf')
        self.assertLessEqual(len(name.encode('utf-8')), 255)
        self.assertEqual(name, '文' * 83 + '.pdf')

        # an oversized extension is cut along with the rest
        name = sanitize_filename('x.' + 'é' * 200)
        self.assertLessEqual(len(name.encode('utf-8')), 255)
        self.assertTrue(name.startswith('x.é'))


if __name__ == '__main__':
    unittest.main()
