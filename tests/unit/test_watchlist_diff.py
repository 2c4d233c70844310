import json
import unittest
from unittest import mock

import httpx

from watchroute.domain import FeedRef, WatchlistItem
from watchroute.services import feed_client as feed_client_module
from watchroute.services.errors import RateLimitExhausted, TransientFetchError
from watchroute.services.feed_cache import FeedCache
from watchroute.services.feed_client import FeedClient, parse_feed_items
from watchroute.services.watchlist_diff import WatchlistDiffEngine

from support import FakeFeedClient, changed, unchanged

FEED = FeedRef(source="plex", user_id=1, url="http://plex.test/watchlist", token="tok")

BODY = [
    {"title": "Alien", "type": "movie", "guids": ["imdb://tt0078748", "tmdb://348"], "genres": ["Horror", "Sci-Fi"], "key": "/library/1", "year": 1979},
    {"title": "Severance", "type": "show", "guids": ["tvdb://371980"], "genres": ["Drama"], "key": "/library/2"},
]


def movie(key, title=None, genres=()):
    return WatchlistItem(title=title or key, content_type="movie", genres=frozenset(genres), owner_user_id=1, plex_key=key)


class TestParseFeedItems(unittest.TestCase):
    def test_parses_list_and_items_object(self):
        items = parse_feed_items(BODY, owner_user_id=1)
        self.assertEqual([i.title for i in items], ["Alien", "Severance"])
        self.assertIn("imdb:tt0078748", items[0].external_ids)
        self.assertEqual(items[1].content_type, "show")
        self.assertEqual(len(parse_feed_items({"items": BODY})), 2)

    def test_year_parsed_when_numeric(self):
        items = parse_feed_items(BODY + [{"title": "Dune", "type": "movie", "year": "n/a", "key": "/library/3"}])
        self.assertEqual([i.year for i in items], [1979, None, None])
        self.assertEqual(WatchlistItem.from_dict(items[0].to_dict()).year, 1979)

    def test_unknown_type_is_skipped(self):
        items = parse_feed_items([{"title": "Some Album", "type": "album"}] + BODY)
        self.assertEqual(len(items), 2)

    def test_wrong_shape_raises(self):
        with self.assertRaises(ValueError):
            parse_feed_items({"nope": []})


class TestFeedClient(unittest.IsolatedAsyncioTestCase):
    async def test_conditional_fetch_and_not_modified(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("if-none-match"))
            if request.headers.get("if-none-match") == '"v1"':
                return httpx.Response(304)
            return httpx.Response(200, json=BODY, headers={"ETag": '"v1"'})

        client = FeedClient(transport=httpx.MockTransport(handler))
        first = await client.fetch(FEED)
        self.assertFalse(first.unchanged)
        self.assertEqual(first.freshness_token, '"v1"')
        self.assertEqual(len(first.items), 2)

        second = await client.fetch(FEED, first.freshness_token)
        self.assertTrue(second.unchanged)
        self.assertEqual(seen, [None, '"v1"'])

    async def test_rate_limit_maps_to_rate_limit_exhausted(self):
        client = FeedClient(transport=httpx.MockTransport(lambda r: httpx.Response(429, headers={"Retry-After": "120"})))
        with self.assertRaises(RateLimitExhausted) as ctx:
            await client.fetch(FEED)
        self.assertEqual(ctx.exception.retry_after, 120.0)

    async def test_server_error_and_bad_body_are_transient(self):
        client = FeedClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        with self.assertRaises(TransientFetchError):
            await client.fetch(FEED)

        client = FeedClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"<html>")))
        with self.assertRaises(TransientFetchError):
            await client.fetch(FEED)

    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = FeedClient(transport=httpx.MockTransport(handler))
        with self.assertRaises(TransientFetchError):
            await client.fetch(FEED)


class TestWatchlistDiffEngine(unittest.IsolatedAsyncioTestCase):
    async def test_unchanged_feed_twice_yields_empty_diff_without_reparse(self):
        def handler(request):
            if request.headers.get("if-none-match") == '"v1"':
                return httpx.Response(304)
            return httpx.Response(200, content=json.dumps(BODY).encode(), headers={"ETag": '"v1"'})

        engine = WatchlistDiffEngine(FeedCache(), FeedClient(transport=httpx.MockTransport(handler)))
        with mock.patch.object(feed_client_module, "parse_feed_items", wraps=parse_feed_items) as parse:
            first = await engine.poll(FEED)
            second = await engine.poll(FEED)

        self.assertEqual(len(first.added), 2)
        self.assertEqual(second.added, [])
        self.assertEqual(second.removed, [])
        self.assertEqual(parse.call_count, 1)

    async def test_added_items_and_token_stored(self):
        cache = FeedCache()
        client = FakeFeedClient(changed("t1", movie("a")), changed("t2", movie("a"), movie("b")))
        engine = WatchlistDiffEngine(cache, client)

        await engine.poll(FEED)
        diff = await engine.poll(FEED)

        self.assertEqual([i.key for i in diff.added], ["b"])
        self.assertEqual(client.tokens, [None, "t1"])
        self.assertEqual(cache.get(FEED).freshness_token, "t2")

    async def test_removal_is_debounced_over_two_fetches(self):
        client = FakeFeedClient(
            changed("t1", movie("a"), movie("b")),
            changed("t2", movie("a")),
            changed("t3", movie("a")),
        )
        engine = WatchlistDiffEngine(FeedCache(), client)

        await engine.poll(FEED)
        once = await engine.poll(FEED)
        twice = await engine.poll(FEED)

        self.assertEqual(once.removed, [])
        self.assertEqual([r.key for r in twice.removed], ["b"])
        # Pending removal forces a full fetch instead of a conditional one
        self.assertEqual(client.tokens, [None, "t1", None])

    async def test_reappearing_item_is_not_added_again(self):
        client = FakeFeedClient(
            changed("t1", movie("a"), movie("b")),
            changed("t2", movie("a")),
            changed("t3", movie("a"), movie("b")),
            changed("t4", movie("a")),
        )
        cache = FeedCache()
        engine = WatchlistDiffEngine(cache, client)

        await engine.poll(FEED)
        await engine.poll(FEED)
        back = await engine.poll(FEED)
        gone_again = await engine.poll(FEED)

        self.assertTrue(back.empty)
        self.assertEqual(cache.get(FEED).missing, {"b": 1})
        self.assertEqual(gone_again.removed, [])

    async def test_fetch_error_leaves_cache_untouched(self):
        cache = FeedCache()
        client = FakeFeedClient(changed("t1", movie("a")), TransientFetchError("boom"))
        engine = WatchlistDiffEngine(cache, client)
        await engine.poll(FEED)
        before = cache.get(FEED)

        with self.assertRaises(TransientFetchError):
            await engine.poll(FEED)
        self.assertIs(cache.get(FEED), before)
        self.assertEqual(before.freshness_token, "t1")

    async def test_metadata_enrichment_keeps_item_known(self):
        cache = FeedCache()
        client = FakeFeedClient(changed("t1", movie("a")), changed("t2", movie("a", genres=["Horror"])))
        engine = WatchlistDiffEngine(cache, client)
        await engine.poll(FEED)
        diff = await engine.poll(FEED)

        self.assertTrue(diff.empty)
        self.assertEqual(cache.get(FEED).items["a"].genres, frozenset({"Horror"}))

    async def test_baseline_suppresses_initial_adds(self):
        client = FakeFeedClient(changed("t1", movie("a"), movie("b")), unchanged("t1"))
        engine = WatchlistDiffEngine(FeedCache(), client)

        count = await engine.establish_baseline(FEED)
        diff = await engine.poll(FEED)

        self.assertEqual(count, 2)
        self.assertTrue(diff.empty)


if __name__ == "__main__":
    unittest.main()
