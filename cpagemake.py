#!/usr/bin/env python3
"""
CPagemake
========================================

Creates tomorrow's (JST) category discussion page from the day-page
template, e.g. ``プロジェクト:カテゴリ関連/議論/2026年/10月20日``.

The template page may use ``{year}``, ``{month}``, ``{day}`` and
``{page_name}``; they are substituted literally (no zero padding).

Known limitation: the page is checked for existence and then created. If
another editor creates it in between, the create call is rejected by the
wiki (``createonly``) and reported as a conflict; nothing is overwritten.
"""
from __future__ import annotations

import argparse
import sys
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from bot import PUB, BotContext, Outcome, create_page, read_page
from taskgate import run_task

TASK_ID = "nnId1"

PLACEHOLDERS = ("year", "month", "day", "page_name")


def target_date(tz_offset_hours: int = 9, now: Optional[datetime] = None) -> date:
    """Tomorrow in the wiki's local time zone."""
    tz = timezone(timedelta(hours=tz_offset_hours))
    now = now.astimezone(tz) if now else datetime.now(tz)
    return (now + timedelta(days=1)).date()


def daily_page_title(title_format: str, day: date) -> str:
    return title_format.format(year=day.year, month=day.month, day=day.day)


def render_daily_page(template: str, day: date, page_name: str) -> str:
    values = {"year": day.year, "month": day.month, "day": day.day, "page_name": page_name}
    text = template
    for key in PLACEHOLDERS:
        text = text.replace("{" + key + "}", str(values[key]))
    return text


def make_daily_page(ctx: BotContext, now: Optional[datetime] = None) -> int:
    cfg = ctx.cfg
    day = target_date(int(cfg["TZ_OFFSET_HOURS"]), now)
    title = daily_page_title(str(cfg["CPAGE_TITLE_FORMAT"]), day)

    existing = read_page(ctx, title)
    if existing.exists:
        ctx.log.info("[完了] ページ %s はすでに存在します。", title, extra=PUB)
        return 0

    template = read_page(ctx, str(cfg["CPAGE_TEMPLATE"]))
    if not template.text:
        ctx.log.error("[失敗] テンプレートページの取得に失敗しました。", extra=PUB)
        return 1

    text = render_daily_page(template.text, day, title)
    ctx.log.debug("ページ内容:\n%s", text)
    result = create_page(ctx, title, text, str(cfg["CPAGE_SUMMARY"]))
    if result.outcome is Outcome.SUCCESS:
        ctx.log.info("[成功] 議論ページの作成: %s", title, extra=PUB)
        return 0
    ctx.log.warning("議論ページの作成: %s[%s]", title, result.outcome.value, extra=PUB)
    # someone else created it first; the page exists, which is what we wanted
    return 0 if result.outcome is Outcome.CONFLICT else 1


def main(debug: bool = False) -> int:
    return run_task(TASK_ID, make_daily_page, debug=debug)


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Create tomorrow's category discussion page")
    ap.add_argument("--debug", action="store_true", help="verbose debug logging")
    args = ap.parse_args()
    sys.exit(main(debug=args.debug))
