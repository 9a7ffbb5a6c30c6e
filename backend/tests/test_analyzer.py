import unittest

import httpx
from bs4 import BeautifulSoup

from crawlpulse.analyzer import (
    LinkProber,
    analyze_document,
    analyze_links,
    count_headings,
    extract_html_version,
    extract_title,
    has_login_form,
)

SAMPLE_PAGE = """<!DOCTYPE html>
<html>
<head><title>Sample page</title></head>
<body>
  <h1>Main</h1>
  <h2>A</h2><h2>B</h2><h2>C</h2>
  <h3>1</h3><h3>2</h3><h3>3</h3><h3>4</h3>
  <h4>Deep</h4>
  <form action="/search"><input type="text" name="q"></form>
  <form action="/login">
    <input type="text" name="user">
    <input type="password" name="pass">
  </form>
</body>
</html>
"""

LINKS_PAGE = """<html><body>
  <a href="#x">fragment</a>
  <a href="mailto:someone@example.com">mail</a>
  <a href="tel:+100200300">call</a>
  <a href="javascript:void(0)">js</a>
  <a href="">empty</a>
  <a href="/about">About <b>us</b></a>
  <a href="/missing">Missing</a>
  <a href="https://other.example/page">Elsewhere</a>
  <a href="https://down.example/">Down</a>
</body></html>
"""


def soup_of(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def site_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "down.example":
        raise httpx.ConnectError("connection refused", request=request)
    if request.url.path == "/missing":
        return httpx.Response(404)
    return httpx.Response(200, text="ok")


class DocumentExtractionTest(unittest.TestCase):
    def test_sample_page(self):
        soup = soup_of(SAMPLE_PAGE)
        self.assertEqual(extract_html_version(soup), "HTML5")
        self.assertEqual(count_headings(soup), {"h1": 1, "h2": 3, "h3": 4, "h4": 1})
        self.assertTrue(has_login_form(soup))
        self.assertEqual(extract_title(soup), "Sample page")

    def test_html_versions(self):
        cases = {
            "<html><body></body></html>": "HTML5",
            "<!doctype HTML><html></html>": "HTML5",
            '<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.0 Strict//EN" '
            '"http://www.w3.org/TR/xhtml1/DTD/xhtml1-strict.dtd"><html></html>': "XHTML",
            '<!DOCTYPE HTML PUBLIC "-//W3C//DTD HTML 4.01//EN" '
            '"http://www.w3.org/TR/html4/strict.dtd"><html></html>': "HTML 4.01",
            "<!DOCTYPE something-else><html></html>": "HTML5",
        }
        for html, expected in cases.items():
            with self.subTest(html=html):
                self.assertEqual(extract_html_version(soup_of(html)), expected)

    def test_title_edge_cases(self):
        self.assertEqual(extract_title(soup_of("<html><head></head></html>")), "")
        self.assertEqual(extract_title(soup_of("<title>  padded  </title>")), "padded")

    def test_form_without_password_is_not_login(self):
        soup = soup_of('<form><input type="text"><input type="submit"></form>')
        self.assertFalse(has_login_form(soup))

    def test_missing_headings_are_absent(self):
        self.assertEqual(count_headings(soup_of("<p>no headings</p>")), {})


class LinkClassificationTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(site_handler))
        self.prober = LinkProber(client=self.client, timeout=2.0)

    async def asyncTearDown(self):
        await self.client.aclose()

    async def test_categories(self):
        analysis = await analyze_links(soup_of(LINKS_PAGE), "https://example.com/index.html", self.prober)

        self.assertEqual(analysis.count("internal"), 1)
        self.assertEqual(analysis.count("external"), 1)
        self.assertEqual(analysis.count("inaccessible"), 2)
        self.assertEqual(len(analysis.links), 4)

        by_href = {link.href: link for link in analysis.links}
        self.assertNotIn("#x", by_href)
        self.assertNotIn("mailto:someone@example.com", by_href)

        about = by_href["/about"]
        self.assertEqual(about.absolute_url, "https://example.com/about")
        self.assertTrue(about.is_internal)
        self.assertEqual(about.status_code, 200)
        self.assertEqual(about.anchor_text, "About us")

        missing = by_href["/missing"]
        self.assertTrue(missing.is_internal)
        self.assertEqual(missing.status_code, 404)

        self.assertFalse(by_href["https://other.example/page"].is_internal)
        self.assertIsNone(by_href["https://down.example/"].status_code)

    async def test_malformed_href_does_not_break_analysis(self):
        page = '<a href="/about">About</a><a href="http://[oops">Broken</a>'
        analysis = await analyze_links(soup_of(page), "https://example.com/", self.prober)

        self.assertEqual(analysis.count("internal"), 1)
        self.assertEqual(analysis.count("inaccessible"), 1)
        broken = {link.href: link for link in analysis.links}["http://[oops"]
        self.assertEqual(broken.absolute_url, "")
        self.assertTrue(broken.is_internal)
        self.assertIsNone(broken.status_code)

    async def test_progress_callback(self):
        seen = []

        async def on_progress(completed, total):
            seen.append((completed, total))

        await analyze_links(soup_of(LINKS_PAGE), "https://example.com/", self.prober, on_progress=on_progress)
        self.assertEqual(sorted(seen), [(1, 4), (2, 4), (3, 4), (4, 4)])

    async def test_analyze_document(self):
        beats = []
        metadata = await analyze_document(
            soup_of(SAMPLE_PAGE + '<a href="/about">About</a>'),
            "https://example.com/",
            self.prober,
            heartbeat=beats.append,
        )
        self.assertEqual(metadata.html_version, "HTML5")
        self.assertEqual(metadata.title, "Sample page")
        self.assertEqual(metadata.heading_count(3), 4)
        self.assertEqual(metadata.heading_count(6), 0)
        self.assertTrue(metadata.has_login_form)
        self.assertEqual(metadata.links.count("internal"), 1)
        self.assertEqual(beats, ["Extracting metadata", "Analyzing links", "Checking login form"])

    async def test_long_title_is_truncated(self):
        html = f"<title>{'x' * 700}</title>"
        metadata = await analyze_document(soup_of(html), "https://example.com/", self.prober)
        self.assertEqual(len(metadata.title), 500)


if __name__ == "__main__":
    unittest.main()
