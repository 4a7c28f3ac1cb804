#!/usr/bin/env python3
"""
sandbox-clean
========================================

Resets the public sandboxes to their initial content. A sandbox whose
history (live + deleted revisions) has reached ``SANDBOX_REV_LIMIT`` is
not reset; instead an archive ("貝塚送り") request is filed on the
administrators' noticeboard, under the level-2 section configured for that
sandbox:

    == サンドボックスの初期化依頼 ==
    === Wikipedia‐ノート:サンドボックスの貝塚送り ===
    * {{Page|Wikipedia‐ノート:サンドボックス}} (4600版)の貝塚送りをお願い致します。--~~~~

Requests already on the board are not repeated, and the rest of the board
is left untouched.
"""
from __future__ import annotations

import argparse
import re
import sys
from dataclasses import dataclass
from typing import List, Sequence

import mwparserfromhell as mwpfh
from pywikibot.data import api as pwb_api
from pywikibot.exceptions import Error as PywikibotError
from pywikibot.site import APISite

from bot import PUB, BotContext, Outcome, edit_page, save_page
from taskgate import run_task
from wikiparse import find_section, insert_after, parse_sections, subsections

TASK_ID = "nnId3"


@dataclass(frozen=True)
class Sandbox:
    title: str
    reset_template: str  # substituted to produce the initial content
    board_section: str  # level-2 section on the noticeboard


@dataclass(frozen=True)
class ArchiveRequest:
    title: str
    total: int
    board_section: str


SANDBOXES: List[Sandbox] = [
    Sandbox("Wikipedia‐ノート:サンドボックス", "ノート用サンドボックスの初期化",
            "サンドボックスの初期化依頼"),
    Sandbox("Help:ビジュアルエディター/sandbox", "ビジュアルエディター用サンドボックスの初期化",
            "ビジュアルエディター/sandboxの初期化依頼"),
    Sandbox("Help:VisualEditor_sandbox", "利用者:Nanona15dobato/VisualEditor sandbox 初期化用",
            "ビジュアルエディター/sandboxの初期化依頼"),
]

###############################################################################
# Noticeboard text                                                            #
###############################################################################


def plain_heading(name: str) -> str:
    """Heading text with markup stripped, for comparing section names."""
    text = mwpfh.parse(name).strip_code()
    return re.sub(r"[\s_]+", " ", text).strip()


def request_heading(title: str) -> str:
    return f"{title}の貝塚送り"


def request_block(req: ArchiveRequest) -> str:
    return (
        f"=== {request_heading(req.title)} ===\n"
        f"* {{{{Page|{req.title}}}}} ({req.total}版)の貝塚送りをお願い致します。--~~~~\n"
    )


def add_archive_requests(text: str, requests: Sequence[ArchiveRequest], max_level: int = 3) -> str:
    """
    Return ``text`` with one level-3 request per entry in ``requests``.

    A missing level-2 section is appended at the end of the page; an
    existing one gets the request appended after its last subsection.
    Requests whose subsection already exists are skipped.
    """
    sections = parse_sections(text, max_level)
    for req in requests:
        parent = find_section(sections, req.board_section, level=2, normalize=plain_heading)
        if parent is None:
            text += f"\n\n== {req.board_section} ==\n" + request_block(req)
            sections = parse_sections(text, max_level)
            continue
        existing = find_section(
            subsections(sections, parent), request_heading(req.title),
            level=3, normalize=plain_heading,
        )
        if existing is not None:
            continue
        text = insert_after(text, parent.span, "\n" + request_block(req))
        sections = parse_sections(text, max_level)
    return text


def reset_summary(total: int) -> str:
    shown = "5000以上" if total >= 5000 else str(total)
    return f"Bot： 砂場ならし（削除済みを含めた版数: {shown}）"


def request_summary(count: int) -> str:
    return f"Bot： サンドボックスの初期化依頼（{count}件）"

###############################################################################
# Revision counts                                                             #
###############################################################################


def _query_pages(site: APISite, params: dict) -> list:
    req = pwb_api.Request(site=site, parameters={"action": "query", "formatversion": 2, **params})
    return req.submit().get("query", {}).get("pages", [])


def count_revisions(site: APISite, title: str) -> int:
    pages = _query_pages(site, {
        "prop": "revisions", "titles": title, "rvlimit": "max", "rvprop": "ids",
    })
    return len(pages[0].get("revisions", [])) if pages else 0


def count_deleted_revisions(site: APISite, title: str) -> int:
    pages = _query_pages(site, {
        "prop": "deletedrevisions", "titles": title, "drvlimit": "max", "drvprop": "ids",
    })
    return len(pages[0].get("deletedrevisions", [])) if pages else 0

###############################################################################
# Task                                                                        #
###############################################################################


def clean_sandboxes(ctx: BotContext, sandboxes: Sequence[Sandbox] = SANDBOXES) -> int:
    limit = int(ctx.cfg["SANDBOX_REV_LIMIT"])
    requests: List[ArchiveRequest] = []

    for sb in sandboxes:
        ctx.log.info("処理中: %s (%s)", sb.title, sb.reset_template)
        try:
            live = count_revisions(ctx.site, sb.title)
        except PywikibotError as e:
            ctx.log.error("通常版取得エラー: %s", e, extra=PUB)
            return 1
        try:
            deleted = count_deleted_revisions(ctx.site, sb.title)
        except PywikibotError as e:
            ctx.log.error("削除済み版取得エラー: %s", e, extra=PUB)
            return 1
        total = live + deleted
        ctx.log.info("%s: 通常版 %d, 削除済み版 %d, 合計 %d 版", sb.title, live, deleted, total)

        if total >= limit:
            requests.append(ArchiveRequest(sb.title, total, sb.board_section))
            ctx.log.info("版数が %d 以上のため、貝塚送りを依頼: %s（版数: %d）",
                         limit, sb.title, total, extra=PUB)
            continue
        if sb.title == ctx.cfg["SANDBOX_MAIN"]:
            continue

        result = save_page(ctx, sb.title, f"{{{{subst:{sb.reset_template}}}}}",
                           reset_summary(total), minor=True, bot=True)
        if result.outcome is Outcome.NOCHANGE:
            ctx.log.info("白紙化不要: %s（版数: %d）", sb.title, total, extra=PUB)
        elif result.outcome is Outcome.SUCCESS:
            ctx.log.info("白紙化しました: %s（版数: %d）", sb.title, total, extra=PUB)
        else:
            ctx.log.error("白紙化に失敗しました: %s（版数: %d）", sb.title, total, extra=PUB)

    if not requests:
        return 0

    result = edit_page(
        ctx,
        str(ctx.cfg["SANDBOX_BOARD_PAGE"]),
        lambda text: add_archive_requests(text, requests),
        request_summary(len(requests)),
        minor=False,
        bot=False,
    )
    if result.ok:
        ctx.log.info("サンドボックス初期化依頼を提出しました: %d件", len(requests), extra=PUB)
        return 0
    ctx.log.error("サンドボックス初期化依頼の提出に失敗しました", extra=PUB)
    return 1


def main(debug: bool = False) -> int:
    return run_task(TASK_ID, clean_sandboxes, debug=debug)


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Reset sandboxes and file archive requests")
    ap.add_argument("--debug", action="store_true", help="verbose debug logging")
    args = ap.parse_args()
    sys.exit(main(debug=args.debug))
