"""
SubscriptionFetcher 单元测试
"""
import threading
import time

import pytest
import requests

from miao.core.errors import FetchError
from miao.lib.engine.subscription import (
    SUBSCRIPTION_USER_AGENT,
    RegionFilter,
    SubscriptionFetcher,
    SubscriptionStatusBoard,
)
from tests.mocks import SUBSCRIPTION_YAML, FakeResponse, FakeSession


SUB_A = "https://sub.example.com/a"
SUB_B = "https://sub.example.com/b"


class TestRegionFilter:
    """区域过滤谓词测试"""

    def test_matches_any_marker(self):
        include = RegionFilter(["JP", "SG"])
        assert include("JP 东京 01")
        assert include("新加坡 SG 02")
        assert not include("US 洛杉矶")

    def test_empty_markers_keep_all(self):
        """markers 为空时不过滤"""
        assert RegionFilter([])("anything")


class TestFetch:
    """单个订阅拉取测试"""

    def test_sends_clash_meta_user_agent(self):
        """请求头带 clash-meta UA"""
        session = FakeSession({SUB_A: FakeResponse(text=SUBSCRIPTION_YAML)})
        SubscriptionFetcher(session=session).fetch(SUB_A)

        headers = session.calls[0].kwargs["headers"]
        assert headers["User-Agent"] == SUBSCRIPTION_USER_AGENT

    def test_filters_and_translates(self):
        """按区域过滤后转换，未知协议被跳过"""
        session = FakeSession({SUB_A: FakeResponse(text=SUBSCRIPTION_YAML)})
        fetcher = SubscriptionFetcher(include=RegionFilter(["JP", "TW", "SG"]), session=session)

        result = fetcher.fetch(SUB_A)

        assert result.names == ["JP 东京 01", "TW 台北 01", "SG 新加坡 01"]
        assert [o["type"] for o in result.outbounds] == ["hysteria2", "anytls", "shadowsocks"]
        assert result.outbounds[1]["tls"]["insecure"] is False

    @pytest.mark.parametrize("response", [
        FakeResponse(status_code=502, text="bad gateway"),
        FakeResponse(text="   "),
        FakeResponse(text="proxies: [unclosed"),
        FakeResponse(text="rules: []"),
    ])
    def test_bad_responses_raise_fetch_error(self, response):
        """非 2xx / 空内容 / 非法 YAML / 缺少 proxies 均抛出 FetchError"""
        session = FakeSession({SUB_A: response})
        with pytest.raises(FetchError) as exc_info:
            SubscriptionFetcher(session=session).fetch(SUB_A)
        assert exc_info.value.url == SUB_A

    def test_timeout_raises_fetch_error(self):
        session = FakeSession({SUB_A: requests.Timeout("read timed out")})
        with pytest.raises(FetchError, match="read timed out"):
            SubscriptionFetcher(session=session).fetch(SUB_A)


class TestFetchAll:
    """并发拉取测试"""

    def test_partial_failure_keeps_order_and_records_status(self):
        """单个订阅失败不影响其他订阅，状态表记录每个订阅"""
        session = FakeSession({
            SUB_A: FakeResponse(text=SUBSCRIPTION_YAML),
            SUB_B: requests.Timeout("timed out"),
        })
        board = SubscriptionStatusBoard()
        fetcher = SubscriptionFetcher(include=RegionFilter(["JP", "TW", "SG"]), session=session)

        results = fetcher.fetch_all([SUB_B, SUB_A], board=board)

        assert isinstance(results[0], FetchError)
        assert results[1].url == SUB_A
        assert board.get(SUB_A).success is True
        assert board.get(SUB_A).node_count == 3
        assert board.get(SUB_B).success is False
        assert "timed out" in board.get(SUB_B).error

    def test_shared_deadline_bounds_slow_subscription(self):
        """卡住的订阅在 timeout 到期时记为失败，不拖慢整体合成"""
        release = threading.Event()

        def _hang(**kwargs):
            release.wait(5)
            return FakeResponse(text=SUBSCRIPTION_YAML)

        session = FakeSession({SUB_A: FakeResponse(text=SUBSCRIPTION_YAML), SUB_B: _hang})
        fetcher = SubscriptionFetcher(timeout=0.3, session=session)

        started = time.monotonic()
        try:
            results = fetcher.fetch_all([SUB_A, SUB_B])
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 2.0
        assert results[0].url == SUB_A
        assert isinstance(results[1], FetchError)
        assert results[1].url == SUB_B

    def test_empty_url_list(self):
        assert SubscriptionFetcher().fetch_all([]) == []


class TestStatusBoard:
    """订阅状态表测试"""

    def test_retain_drops_removed_urls(self):
        board = SubscriptionStatusBoard()
        board.record_success(SUB_A, 3)
        board.record_failure(SUB_B, "boom")

        board.retain([SUB_A])

        assert board.get(SUB_B) is None
        assert board.get(SUB_A).node_count == 3

    def test_snapshot_reports_unfetched(self):
        """尚未拉取的订阅视为失败状态"""
        board = SubscriptionStatusBoard()
        snap = board.snapshot([SUB_A])
        assert snap[0].success is False
        assert snap[0].to_dict()["error"]
