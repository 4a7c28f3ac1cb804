"""Tests for the sandbox reset task in sandbox_clean.py.

The noticeboard rewrite (add_archive_requests) is a pure function and is
tested directly; the task itself runs against the FakeWiki fixture.
"""

import pytest
from unittest.mock import patch
from pywikibot.exceptions import Error as PywikibotError

import bot
import sandbox_clean
from sandbox_clean import ArchiveRequest, Sandbox

SECTION = "サンドボックスの初期化依頼"
VE_SECTION = "ビジュアルエディター/sandboxの初期化依頼"

BOARD = (
    "冒頭\n\n"
    f"== {SECTION} ==\n"
    "=== 古い依頼 ===\n"
    "済\n\n"
    "== 別件 ==\n"
    "その他\n"
)

NOTE_REQ = ArchiveRequest("Wikipedia‐ノート:サンドボックス", 4600, SECTION)


class TestRequestText:
    def test_block(self):
        assert sandbox_clean.request_block(NOTE_REQ) == (
            "=== Wikipedia‐ノート:サンドボックスの貝塚送り ===\n"
            "* {{Page|Wikipedia‐ノート:サンドボックス}} (4600版)の貝塚送りをお願い致します。--~~~~\n"
        )

    def test_summaries(self):
        assert sandbox_clean.reset_summary(1234) == "Bot： 砂場ならし（削除済みを含めた版数: 1234）"
        assert sandbox_clean.reset_summary(5000) == "Bot： 砂場ならし（削除済みを含めた版数: 5000以上）"
        assert sandbox_clean.request_summary(2) == "Bot： サンドボックスの初期化依頼（2件）"

    def test_plain_heading(self):
        assert sandbox_clean.plain_heading("[[Help:VisualEditor_sandbox]]の貝塚送り") == (
            "Help:VisualEditor sandboxの貝塚送り"
        )
        assert sandbox_clean.plain_heading("  ''強調''  ") == "強調"


class TestAddArchiveRequests:
    def test_appends_inside_existing_section(self):
        cut = BOARD.index("== 別件 ==")
        expected = BOARD[:cut] + "\n" + sandbox_clean.request_block(NOTE_REQ) + BOARD[cut:]
        assert sandbox_clean.add_archive_requests(BOARD, [NOTE_REQ]) == expected

    def test_creates_missing_section_at_end(self):
        text = "== 別件 ==\nx\n"
        expected = text + f"\n\n== {SECTION} ==\n" + sandbox_clean.request_block(NOTE_REQ)
        assert sandbox_clean.add_archive_requests(text, [NOTE_REQ]) == expected

    def test_two_requests_share_one_new_section(self):
        first = ArchiveRequest("Help:ビジュアルエディター/sandbox", 4501, VE_SECTION)
        second = ArchiveRequest("Help:VisualEditor_sandbox", 4700, VE_SECTION)
        text = "== 別件 ==\nx\n"
        result = sandbox_clean.add_archive_requests(text, [first, second])
        assert result.count(f"== {VE_SECTION} ==\n") == 1
        assert result == (
            text
            + f"\n\n== {VE_SECTION} ==\n"
            + sandbox_clean.request_block(first)
            + "\n"
            + sandbox_clean.request_block(second)
        )

    def test_existing_request_is_not_repeated(self):
        req = ArchiveRequest("Help:VisualEditor_sandbox", 4700, VE_SECTION)
        text = f"== {VE_SECTION} ==\n=== [[Help:VisualEditor_sandbox]]の貝塚送り ===\n依頼済み\n"
        assert sandbox_clean.add_archive_requests(text, [req]) == text

    def test_request_under_another_section_does_not_count(self):
        req = ArchiveRequest("X", 4600, "S")
        text = "== 別件 ==\n=== Xの貝塚送り ===\n\n== S ==\n"
        result = sandbox_clean.add_archive_requests(text, [req])
        assert result.count("=== Xの貝塚送り ===") == 2
        assert result.startswith(text)

    def test_rest_of_board_untouched_and_idempotent(self):
        once = sandbox_clean.add_archive_requests(BOARD, [NOTE_REQ])
        assert once.startswith(BOARD[: BOARD.index("== 別件 ==")])
        assert once.endswith("== 別件 ==\nその他\n")
        assert sandbox_clean.add_archive_requests(once, [NOTE_REQ]) == once

    def test_no_requests(self):
        assert sandbox_clean.add_archive_requests(BOARD, []) == BOARD


class TestRevisionCounts:
    def test_counts_live_revisions(self, mock_site):
        with patch.object(sandbox_clean.pwb_api, "Request") as req_cls:
            req_cls.return_value.submit.return_value = {
                "query": {"pages": [{"title": "A", "revisions": [{"revid": 1}, {"revid": 2}]}]}
            }
            assert sandbox_clean.count_revisions(mock_site, "A") == 2
        params = req_cls.call_args.kwargs["parameters"]
        assert params["prop"] == "revisions"
        assert params["rvlimit"] == "max"
        assert params["formatversion"] == 2

    def test_counts_deleted_revisions(self, mock_site):
        with patch.object(sandbox_clean.pwb_api, "Request") as req_cls:
            req_cls.return_value.submit.return_value = {
                "query": {"pages": [{"title": "A", "deletedrevisions": [{"revid": 9}]}]}
            }
            assert sandbox_clean.count_deleted_revisions(mock_site, "A") == 1

    def test_missing_page_has_no_revisions(self, mock_site):
        with patch.object(sandbox_clean.pwb_api, "Request") as req_cls:
            req_cls.return_value.submit.return_value = {"query": {"pages": [{"missing": True}]}}
            assert sandbox_clean.count_revisions(mock_site, "A") == 0


SANDBOXES = [Sandbox("A", "TplA", "S1"), Sandbox("B", "TplB", "S1")]
LIVE = {"A": 100, "B": 4000}
DELETED = {"A": 0, "B": 600}


class TestCleanSandboxes:
    @pytest.fixture
    def counts(self):
        with patch.object(sandbox_clean, "count_revisions",
                          side_effect=lambda site, t: LIVE[t]) as live, \
                patch.object(sandbox_clean, "count_deleted_revisions",
                             side_effect=lambda site, t: DELETED[t]) as deleted:
            yield live, deleted

    def test_resets_small_and_reports_large(self, ctx, fake_wiki, counts):
        board_title = bot.DEFAULT_CFG["SANDBOX_BOARD_PAGE"]
        fake_wiki.pages.update({"A": "scribbles", "B": "lots of history", board_title: "== S1 ==\n"})

        assert sandbox_clean.clean_sandboxes(ctx, SANDBOXES) == 0

        assert fake_wiki.pages["A"] == "{{subst:TplA}}"
        assert fake_wiki.pages["B"] == "lots of history"
        assert "=== Bの貝塚送り ===" in fake_wiki.pages[board_title]
        assert "(4600版)" in fake_wiki.pages[board_title]
        reset, board = fake_wiki.saves
        assert reset[2] == {"summary": sandbox_clean.reset_summary(100), "minor": True, "bot": True}
        assert board[2]["summary"] == sandbox_clean.request_summary(1)
        assert board[2]["bot"] is False

    def test_main_sandbox_is_never_reset(self, ctx, fake_wiki, counts):
        ctx.cfg["SANDBOX_MAIN"] = "A"
        fake_wiki.pages.update({"A": "x", "B": "y"})
        counts[0].side_effect = lambda site, t: 1
        counts[1].side_effect = lambda site, t: 0
        assert sandbox_clean.clean_sandboxes(ctx, SANDBOXES) == 0
        assert [s[0] for s in fake_wiki.saves] == ["B"]

    def test_count_failure_is_fatal(self, ctx, fake_wiki, counts):
        counts[0].side_effect = PywikibotError("api down")
        assert sandbox_clean.clean_sandboxes(ctx, SANDBOXES) == 1
        assert fake_wiki.saves == []

    def test_board_edit_failure(self, ctx, fake_wiki, counts):
        fake_wiki.pages.update({"A": "x", "B": "y"})
        failed = bot.EditResult("board", bot.Outcome.FAILURE, error="protected")
        with patch.object(sandbox_clean, "edit_page", return_value=failed):
            assert sandbox_clean.clean_sandboxes(ctx, SANDBOXES) == 1
