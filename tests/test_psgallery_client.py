import unittest
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import unquote

from activity_digest.domain.exceptions import TransientApiError
from activity_digest.infrastructure.psgallery_client import PSGalleryClient, parse_feed


def _feed(entries, next_url=None):
    links = f'<link rel="next" href="{next_url}" />' if next_url else ""
    body = "".join(
        f"""
  <entry>
    <title type="text">{name}</title>
    <m:properties>
      <d:Id>{name}</d:Id>
      <d:Version>{version}</d:Version>
      <d:DownloadCount m:type="Edm.Int32">{downloads}</d:DownloadCount>
      <d:IsLatestVersion m:type="Edm.Boolean">{latest}</d:IsLatestVersion>
      <d:Published m:type="Edm.DateTime">2024-03-01T08:00:00.123</d:Published>
    </m:properties>
  </entry>"""
        for name, version, downloads, latest in entries
    )
    return f"""<?xml version="1.0" encoding="utf-8"?>
<feed xml:base="https://www.powershellgallery.com/api/v2"
      xmlns="http://www.w3.org/2005/Atom"
      xmlns:d="http://schemas.microsoft.com/ado/2007/08/dataservices"
      xmlns:m="http://schemas.microsoft.com/ado/2007/08/dataservices/metadata">
  <title type="text">Packages</title>{body}
  {links}
</feed>"""


def _response(status=200, text=""):
    resp = AsyncMock()
    resp.status = status
    resp.text = AsyncMock(return_value=text)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


class TestParseFeed(unittest.TestCase):
    def test_entries_and_next_link(self) -> None:
        entries, next_url = parse_feed(_feed([("TestModule", "1.2.0", 147, "true")], "https://example/next"))

        self.assertEqual(next_url, "https://example/next")
        self.assertEqual(entries[0]["Id"], "TestModule")
        self.assertEqual(entries[0]["DownloadCount"], "147")
        self.assertEqual(entries[0]["title"], "TestModule")

    def test_last_page_has_no_next_link(self) -> None:
        entries, next_url = parse_feed(_feed([]))

        self.assertEqual(entries, [])
        self.assertIsNone(next_url)


class TestPSGalleryClient(unittest.IsolatedAsyncioTestCase):
    async def test_author_search_follows_next_links(self) -> None:
        session = MagicMock()
        session.request = MagicMock(side_effect=[
            _response(text=_feed([("A", "1.0", 1, "true")], "https://www.powershellgallery.com/api/v2/page2")),
            _response(text=_feed([("B", "2.0", 2, "true")])),
        ])
        client = PSGalleryClient()

        entries = await client.search_by_author(session, "O'Brien")

        self.assertEqual([entry["Id"] for entry in entries], ["A", "B"])
        first_url = unquote(session.request.call_args_list[0].args[1])
        self.assertIn("Authors eq 'O''Brien'", first_url)
        self.assertEqual(session.request.call_args_list[1].args[1], "https://www.powershellgallery.com/api/v2/page2")

    async def test_find_package_prefers_latest_version(self) -> None:
        session = MagicMock()
        session.request = MagicMock(side_effect=[
            _response(text=_feed([("Mod", "1.0", 90, "false"), ("Mod", "1.1", 100, "true")])),
        ])

        entry = await PSGalleryClient().find_package(session, "Mod")

        self.assertEqual(entry["Version"], "1.1")

    async def test_missing_package_is_none(self) -> None:
        session = MagicMock()
        session.request = MagicMock(side_effect=[_response(status=404)])

        self.assertIsNone(await PSGalleryClient().find_package(session, "Nope"))

    async def test_server_error_is_raised(self) -> None:
        session = MagicMock()
        session.request = MagicMock(side_effect=[_response(status=503)])

        with self.assertRaises(TransientApiError):
            await PSGalleryClient().search_by_author(session, "octocat")

    async def test_malformed_feed_is_transient_error(self) -> None:
        session = MagicMock()
        session.request = MagicMock(side_effect=[_response(text="<feed><oops")])

        with self.assertRaises(TransientApiError):
            await PSGalleryClient().search_by_author(session, "octocat")
