#!/usr/bin/env python3
"""
Generator tests for netscape_bookmarks
Tests tree assembly, ordering, timestamps and export/import round trips
"""

import sys
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from netscape_bookmarks import (
    INBOX_COLLECTION_ID,
    Bookmark,
    Collection,
    build_collection_tree,
    collation_key,
    generate_bookmark_file,
    iter_parsed_bookmarks,
    parse_bookmark_file,
    to_unix_seconds,
)


NOW = 1700000000


def sample_records():
    collections = [
        Collection(id='c-work', name='Work', created_at=1600000000, updated_at=1600000500),
        Collection(id='c-tools', name='Tools', parent_id='c-work', description='Build\nand deploy',
                   created_at=1600001000, updated_at=1600001000),
        Collection(id='c-read', name='Reading', created_at=1600002000, updated_at=1600002000),
    ]
    bookmarks = [
        Bookmark(id='b1', url='https://ci.example/', title='CI', collection_id='c-tools',
                 created_at=1600003000, updated_at=1600003000),
        Bookmark(id='b2', url='https://news.example/?a=1&b=2', title='News', collection_id='c-read',
                 favicon_url='https://news.example/favicon.ico', created_at=1600004000, updated_at=1600004000),
        Bookmark(id='b3', url='https://loose.example/', collection_id=INBOX_COLLECTION_ID,
                 created_at=1600005000, updated_at=1600005000),
    ]
    return bookmarks, collections


class TestTimestamps(unittest.TestCase):
    """Test timestamp normalization"""

    def test_supported_values(self):
        cases = [
            (1700000000, 1700000000),
            (1700000000.9, 1700000000),
            ('1700000000', 1700000000),
            ('2023-11-14T22:13:20Z', 1700000000),
            ('2023-11-14T22:13:20+00:00', 1700000000),
            (datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc), 1700000000),
            (datetime(2023, 11, 14, 22, 13, 20), 1700000000),
        ]
        for value, expected in cases:
            with self.subTest(value=value):
                self.assertEqual(to_unix_seconds(value, now=1), expected)

    def test_fallback_to_now(self):
        for value in (None, '', 'yesterday', float('nan'), float('inf'), True, object(),
                      10 ** 400, '9' * 400, '-' + '9' * 400):
            with self.subTest(value=str(value)[:20]):
                self.assertEqual(to_unix_seconds(value, now=42), 42)

    def test_out_of_range_values_do_not_break_generation(self):
        bookmarks = [
            Bookmark(url='https://a.example/', title='A', created_at='9' * 400, updated_at=10 ** 400),
        ]
        output = generate_bookmark_file(bookmarks, [], now=NOW)
        self.assertIn(f'ADD_DATE="{NOW}" LAST_MODIFIED="{NOW}"', output)


class TestTreeAssembly(unittest.TestCase):
    """Test building the collection tree from flat records"""

    def test_parents_and_root_bookmarks(self):
        bookmarks, collections = sample_records()
        roots, root_bookmarks = build_collection_tree(collections, bookmarks)
        self.assertEqual([node.collection.name for node in roots], ['Reading', 'Work'])
        work = roots[1]
        self.assertEqual([child.collection.name for child in work.children], ['Tools'])
        self.assertEqual([b.title for b in work.children[0].bookmarks], ['CI'])
        self.assertEqual([b.url for b in root_bookmarks], ['https://loose.example/'])

    def test_dangling_parent_becomes_root(self):
        collections = [Collection(id='c1', name='Orphan', parent_id='missing')]
        bookmarks = [Bookmark(url='https://a.example/', collection_id='gone')]
        roots, root_bookmarks = build_collection_tree(collections, bookmarks)
        self.assertEqual([node.collection.name for node in roots], ['Orphan'])
        self.assertEqual(len(root_bookmarks), 1)

    def test_parent_cycle_is_broken(self):
        collections = [
            Collection(id='a', name='A', parent_id='b'),
            Collection(id='b', name='B', parent_id='a'),
            Collection(id='s', name='Self', parent_id='s'),
        ]
        with self.assertLogs(level='WARNING'):
            roots, _ = build_collection_tree(collections, [])

        names = []
        pending = list(roots)
        while pending:
            node = pending.pop()
            names.append(node.collection.name)
            pending.extend(node.children)
        self.assertEqual(sorted(names), ['A', 'B', 'Self'])
        self.assertIn('Self', [node.collection.name for node in roots])

    def test_collation_order(self):
        names = ['banana', 'Apple', 'apple', 'Éclair', 'cherry']
        self.assertEqual(sorted(names, key=collation_key), ['apple', 'Apple', 'banana', 'cherry', 'Éclair'])


class TestGenerator(unittest.TestCase):
    """Test bookmark file generation"""

    def test_document_shape(self):
        bookmarks, collections = sample_records()
        output = generate_bookmark_file(bookmarks, collections, now=NOW)
        lines = output.split('\n')
        self.assertEqual(lines[0], '<!DOCTYPE NETSCAPE-Bookmark-file-1>')
        self.assertIn('<TITLE>Bookmarks</TITLE>', lines)
        self.assertIn('  <DT><H3 ADD_DATE="1600000000" LAST_MODIFIED="1600005000" '
                      'PERSONAL_TOOLBAR_FOLDER="true">Bookmarks bar</H3>', lines)
        self.assertEqual(lines[-2:], ['  </DL><p>', '</DL><p>'])
        self.assertEqual(output.count('<DL><p>'), output.count('</DL><p>'))

        self.assertIn('      <DT><A HREF="https://news.example/?a=1&amp;b=2" ADD_DATE="1600004000" '
                      'LAST_MODIFIED="1600004000" ICON="https://news.example/favicon.ico">News</A>', lines)
        self.assertIn('      <DD>Build&#10;and deploy', lines)

    def test_root_bookmarks_before_root_collections(self):
        bookmarks, collections = sample_records()
        output = generate_bookmark_file(bookmarks, collections, now=NOW)
        self.assertLess(output.index('https://loose.example/'), output.index('>Reading</H3>'))

    def test_apple_before_banana(self):
        for collections in ([Collection(id='1', name='Banana'), Collection(id='2', name='Apple')],
                            [Collection(id='2', name='Apple'), Collection(id='1', name='Banana')]):
            with self.subTest(order=[c.name for c in collections]):
                output = generate_bookmark_file([], collections, now=NOW)
                self.assertLess(output.index('>Apple</H3>'), output.index('>Banana</H3>'))

    def test_idempotent(self):
        bookmarks, collections = sample_records()
        first = generate_bookmark_file(bookmarks, collections)
        second = generate_bookmark_file(bookmarks, collections)
        self.assertEqual(first, second)

    def test_missing_timestamp_uses_now(self):
        before = int(time.time())
        output = generate_bookmark_file([Bookmark(url='https://a.example/', title='A')], [])
        after = int(time.time())
        nodes = parse_bookmark_file(output)
        bookmark = nodes[0].children[0]
        self.assertIsInstance(bookmark.add_date, int)
        self.assertGreaterEqual(bookmark.add_date, before)
        self.assertLessEqual(bookmark.add_date, after)

    def test_text_is_escaped(self):
        bookmark = Bookmark(url='https://a.example/', title='Tom & Jerry\'s "Show" <Live>')
        output = generate_bookmark_file([bookmark], [], now=NOW)
        self.assertIn('>Tom &amp; Jerry&#39;s &quot;Show&quot; &lt;Live&gt;</A>', output)

    def test_untitled_bookmark_uses_url(self):
        output = generate_bookmark_file([Bookmark(url='https://untitled.example/')], [], now=NOW)
        self.assertIn('>https://untitled.example/</A>', output)


class TestRoundTrip(unittest.TestCase):
    """Test that generated files parse back to the same records"""

    def test_titles_urls_and_paths_survive(self):
        bookmarks, collections = sample_records()
        bookmarks.append(Bookmark(url='https://q.example/?copy=1&amp=2', title='Tom & Jerry\'s "Show" <Live>',
                                  description='Line one\nLine two', collection_id='c-work'))
        nodes = parse_bookmark_file(generate_bookmark_file(bookmarks, collections, now=NOW))

        self.assertEqual(len(nodes), 1)
        self.assertEqual(nodes[0].title, 'Bookmarks bar')
        found = {(bookmark.title, bookmark.url, path[1:]) for path, bookmark in iter_parsed_bookmarks(nodes)}
        self.assertEqual(found, {
            ('CI', 'https://ci.example/', ('Work', 'Tools')),
            ('News', 'https://news.example/?a=1&b=2', ('Reading',)),
            ('https://loose.example/', 'https://loose.example/', ()),
            ('Tom & Jerry\'s "Show" <Live>', 'https://q.example/?copy=1&amp=2', ('Work',)),
        })

        descriptions = {bookmark.url: bookmark.description for _, bookmark in iter_parsed_bookmarks(nodes)}
        self.assertEqual(descriptions['https://q.example/?copy=1&amp=2'], 'Line one\nLine two')
        work = nodes[0].children[2]
        self.assertEqual(work.title, 'Work')
        tools = work.children[1]
        self.assertEqual(tools.title, 'Tools')
        self.assertEqual(tools.description, 'Build\nand deploy')

    def test_arbitrary_depth(self):
        depth = 8
        collections = [Collection(id=f'c{i}', name=f'Level {i}', parent_id=f'c{i - 1}' if i else None)
                       for i in range(depth)]
        bookmarks = [Bookmark(url='https://deep.example/', title='Deep', collection_id=f'c{depth - 1}')]
        nodes = parse_bookmark_file(generate_bookmark_file(bookmarks, collections, now=NOW))
        paths = [path for path, _ in iter_parsed_bookmarks(nodes)]
        self.assertEqual(paths, [('Bookmarks bar',) + tuple(f'Level {i}' for i in range(depth))])


if __name__ == '__main__':
    unittest.main()
