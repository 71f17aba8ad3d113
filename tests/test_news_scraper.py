import unittest
from datetime import datetime, timezone

from feedrelay.ingestion.http import FetchError
from feedrelay.ingestion.news_scraper import NewsScraper, build_news_document, parse_news_list

NEWS_PAGE_1 = """
<div class="news_list">
<div class="item">
  <div class="news_id">編號</div>
  <div class="type">分類</div>
  <div class="title">標題</div>
</div>
<div class="item">
  <div class="news_id">1201</div>
  <div class="type event">活動</div>
  <div class="title"><a href="news_content.aspx?id=1201">新活動 &amp; 獎勵</a><span class="badge top">置頂</span></div>
  <div class="publish_date">2025/1/5</div>
  <div class="view_count">1,234</div>
</div>
<div class="item">
  <div class="news_id">1202</div>
  <div class="type maintain">維護</div>
  <div class="title"><a href="/web/news/news_content.aspx?id=1202">伺服器維護</a></div>
  <div class="publish_date">2025/01/06</div>
  <div class="view_count">88</div>
</div>
<div class="item">
  <div class="news_id">1190</div>
  <div class="type update">更新</div>
  <div class="title"><a href="news_content.aspx?id=1190"></a></div>
</div>
</div>
"""

NEWS_PAGE_2 = """
<div class="item">
  <div class="news_id">1202</div>
  <div class="type maintain">維護</div>
  <div class="title"><a href="news_content.aspx?id=1202">伺服器維護 (重複)</a></div>
  <div class="publish_date">2025/01/06</div>
  <div class="view_count">90</div>
</div>
<div class="item">
  <div class="news_id">1203</div>
  <div class="type">其他</div>
  <div class="title"><a href="https://www.ffxiv.com.tw/web/news/news_content.aspx?id=1203">網站公告</a></div>
  <div class="publish_date">2025/01/07</div>
  <div class="view_count"></div>
</div>
"""

NOW = datetime(2025, 1, 8, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({"url": url, "params": params, "headers": headers})
        return self.responses.pop(0)


class TestParseNewsList(unittest.TestCase):
    def test_parses_rows(self):
        rows = parse_news_list(NEWS_PAGE_1)

        self.assertEqual([r["id"] for r in rows], ["1201", "1202"])
        first, second = rows
        self.assertEqual(first["category"], "活動")
        self.assertEqual(first["title"], "新活動 & 獎勵")
        self.assertEqual(first["url"], "https://www.ffxiv.com.tw/web/news/news_content.aspx?id=1201")
        self.assertTrue(first["isTop"])
        self.assertEqual(second["category"], "維護")
        self.assertEqual(second["url"], "https://www.ffxiv.com.tw/web/news/news_content.aspx?id=1202")
        self.assertFalse(second["isTop"])

    def test_unknown_type_is_other(self):
        rows = parse_news_list(NEWS_PAGE_2)
        self.assertEqual(rows[1]["category"], "其他")

    def test_empty_page(self):
        self.assertEqual(parse_news_list(""), [])
        self.assertEqual(parse_news_list(None), [])


class TestBuildNewsDocument(unittest.TestCase):
    def test_dedupes_sorts_and_groups(self):
        rows = parse_news_list(NEWS_PAGE_1) + parse_news_list(NEWS_PAGE_2)

        doc = build_news_document(rows, now=NOW)

        self.assertEqual([i["id"] for i in doc["timeline"]], ["1201", "1203", "1202"])
        self.assertEqual(doc["meta"]["total_count"], 3)
        self.assertEqual(doc["meta"]["last_updated"], "2025-01-08T00:00:00.000Z")
        by_id = {i["id"]: i for i in doc["timeline"]}
        self.assertEqual(by_id["1201"]["date"], "2025-01-05")
        self.assertEqual(by_id["1201"]["views"], 1234)
        self.assertEqual(by_id["1202"]["title"], "伺服器維護")
        self.assertEqual(by_id["1203"]["views"], 0)
        self.assertEqual(sorted(doc["categories"]), ["其他", "活動", "維護"])

    def test_capacity(self):
        rows = [{"id": str(n), "title": f"t{n}", "category": "其他"} for n in range(1, 8)]
        doc = build_news_document(rows, now=NOW, max_items=5)
        self.assertEqual([i["id"] for i in doc["timeline"]], ["7", "6", "5", "4", "3"])


class TestNewsScraper(unittest.TestCase):
    def test_failed_page_is_skipped(self):
        session = FakeSession(FakeResponse(text=NEWS_PAGE_1), FakeResponse(status_code=403), FakeResponse(text=NEWS_PAGE_2))
        scraper = NewsScraper(session=session)

        with self.assertLogs("feedrelay.ingestion.news_scraper", level="ERROR"):
            doc = scraper.scrape(now=NOW)

        self.assertEqual([r["params"] for r in session.requests], [{"page": 1}, {"page": 2}, {"page": 3}])
        self.assertIn("Referer", session.requests[0]["headers"])
        self.assertEqual(doc["meta"]["total_count"], 3)

    def test_no_rows_is_fetch_error(self):
        session = FakeSession(FakeResponse(text="<html></html>"), FakeResponse(status_code=404))
        with self.assertRaises(FetchError):
            NewsScraper(pages=(1, 2), session=session).scrape(now=NOW)


if __name__ == "__main__":
    unittest.main()
