#!/usr/bin/env python3
"""
Security-focused tests for bookmark tools
Tests for URL filtering on import, markup escaping on export, and input validation
"""

import sys
import tempfile
import unittest
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from bookmark_store import JsonBookmarkStore
from bookmark_tools import (
    BookmarkImportError,
    import_netscape_text,
    is_importable_url,
    read_text_file,
)
from netscape_bookmarks import Bookmark, Collection, generate_bookmark_file, parse_bookmark_file


class TestSecurityFeatures(unittest.TestCase):
    """Test URL filtering and output escaping"""

    def test_dangerous_schemes_are_not_importable(self):
        """Test that dangerous URL schemes are blocked"""
        dangerous_urls = [
            'javascript:alert("xss")',
            'data:text/html,<script>alert("xss")</script>',
            'vbscript:msgbox("xss")',
            'JAVASCRIPT:alert("XSS")',  # Case insensitive
            ' javascript:alert(1)',
        ]

        for url in dangerous_urls:
            with self.subTest(url=url):
                self.assertFalse(is_importable_url(url), f"Dangerous URL not blocked: {url}")

    def test_malformed_urls_are_not_importable(self):
        for url in ('', '   ', 123, 'http://', 'https://', '//example.com', 'http://[::1'):
            with self.subTest(url=url):
                self.assertFalse(is_importable_url(url))

    def test_script_titles_are_escaped(self):
        """Test that markup in titles and descriptions cannot break out of the file"""
        bookmark = Bookmark(url='https://example.com/" onclick="alert(1)',
                            title='<script>alert("xss")</script>',
                            description='</DD><DT><A HREF="javascript:alert(1)">x</A>')
        collection = Collection(id='c1', name='</H3><DL><p>')
        output = generate_bookmark_file([bookmark], [collection], now=1700000000)

        self.assertNotIn('<script>', output)
        self.assertNotIn('" onclick="', output)
        self.assertNotIn('HREF="javascript:', output)
        self.assertIn('&lt;script&gt;', output)

        nodes = parse_bookmark_file(output)
        root_children = nodes[0].children
        self.assertEqual(root_children[0].title, '<script>alert("xss")</script>')
        self.assertEqual(root_children[0].url, 'https://example.com/" onclick="alert(1)')
        self.assertEqual(root_children[1].title, '</H3><DL><p>')

    def test_import_skips_dangerous_links(self):
        """Test that importing a file never stores script or data links"""
        test_html = '''<!DOCTYPE NETSCAPE-Bookmark-file-1>
<DL><p>
<DT><H3>Valid Bookmarks</H3>
<DL><p>
<DT><A HREF="https://example.com">Example Site</A>
<DT><A HREF="javascript:alert('xss')">Malicious Link</A>
<DT><A HREF="data:text/html,&lt;script&gt;alert('xss')&lt;/script&gt;">Data URL</A>
</DL><p>
</DL><p>'''

        with tempfile.TemporaryDirectory() as temp_dir:
            store = JsonBookmarkStore(Path(temp_dir) / 'store.json')
            with self.assertLogs(level='WARNING'):
                stats = import_netscape_text(test_html, store, 'alice')

            urls = [b.url for b in store.list_bookmarks('alice')]
            self.assertEqual(urls, ['https://example.com'])
            self.assertEqual(stats.skipped, 2)


class TestInputValidation(unittest.TestCase):
    """Test input validation and error handling"""

    def test_invalid_encoding_is_rejected(self):
        """Test handling of files that are not UTF-8"""
        with tempfile.TemporaryDirectory() as temp_dir:
            test_file = Path(temp_dir) / 'invalid.html'
            test_file.write_bytes(b'\xff\xfe<DT><A HREF="http://example.com">\xe9t\xe9</A>')
            with self.assertRaises(BookmarkImportError):
                read_text_file(str(test_file))

    def test_byte_order_mark_is_ignored(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            test_file = Path(temp_dir) / 'bom.html'
            test_file.write_bytes('\ufeff<DT><A HREF="https://example.com/">Example</A>'.encode('utf-8'))
            nodes = parse_bookmark_file(read_text_file(str(test_file)))
            self.assertEqual(nodes[0].url, 'https://example.com/')


if __name__ == '__main__':
    unittest.main()
