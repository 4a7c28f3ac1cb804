#!/usr/bin/env python3
"""
gethighrevs
========================================

Publishes the list of pages with the most revisions, straight from the
wiki replica database. Redirects and pages whose history has already been
split off (category ``HIGHREV_EXCLUDE_CATEGORY``) are left out.

Database credentials come from ``TOOL_REPLICA_USER`` /
``TOOL_REPLICA_PASSWORD`` or, when those are unset, from the Toolforge
``replica.my.cnf`` file.
"""
from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import pywikibot
from pywikibot.data import mysql as pwb_mysql
from pywikibot.site import APISite

from bot import PUB, BotContext, edit_page
from taskgate import run_task

TASK_ID = "highrevs"

QUERY = """
SELECT p.page_id, p.page_title, p.page_namespace, COUNT(*) AS revision_count
FROM page p
INNER JOIN revision r ON p.page_id = r.rev_page
WHERE p.page_namespace IN ({namespaces})
  AND p.page_is_redirect = 0
  AND NOT EXISTS (
      SELECT 1 FROM categorylinks WHERE cl_from = p.page_id AND cl_to = %s
  )
GROUP BY p.page_id, p.page_title, p.page_namespace
HAVING COUNT(*) >= %s
ORDER BY revision_count DESC
LIMIT %s
"""


@dataclass(frozen=True)
class RankedPage:
    page_id: int
    title: str
    namespace: int
    count: int


def parse_namespaces(value: str) -> List[int]:
    return [int(ns) for ns in str(value).split(",") if ns.strip()]


def configure_replica(cfg: Mapping[str, object]) -> None:
    """Point pywikibot's replica connection settings at the configured credentials."""
    conf = pywikibot.config
    conf.db_hostname_format = str(cfg["REPLICA_HOST_FORMAT"])
    conf.db_name_format = str(cfg["REPLICA_DB_FORMAT"])
    user, password = str(cfg["TOOL_REPLICA_USER"]), str(cfg["TOOL_REPLICA_PASSWORD"])
    if user and password:
        conf.db_connect_file = None
        conf.db_username = user
        conf.db_password = password
    else:
        conf.db_connect_file = os.path.expanduser(str(cfg["REPLICA_CNF"]))


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


def rows_to_pages(rows: Iterable[Sequence]) -> List[RankedPage]:
    return [
        RankedPage(int(page_id), _text(title), int(ns), int(count))
        for page_id, title, ns, count in rows
    ]


def fetch_high_revision_pages(
    site: APISite,
    namespaces: Sequence[int],
    min_revisions: int,
    limit: int,
    exclude_category: str,
) -> List[RankedPage]:
    """Pages ranked by revision count, highest first."""
    query = QUERY.format(namespaces=", ".join(["%s"] * len(namespaces)))
    params = (*namespaces, exclude_category.replace(" ", "_"), min_revisions, limit)
    rows = pwb_mysql.mysql_query(query, params=params, dbname=site.dbName(), verbose=False)
    return rows_to_pages(rows)


def namespace_names(site: APISite, namespaces: Iterable[int]) -> Dict[int, str]:
    return {ns: site.namespace(ns) for ns in namespaces}


def page_link(page: RankedPage, names: Mapping[int, str]) -> str:
    if page.namespace == 0:
        return f"[[{page.title}]]"
    # leading colon so File:/Category: rows link instead of embedding
    name = names.get(page.namespace) or f"名前空間{page.namespace}"
    return f"[[:{name}:{page.title}]]"


def format_timestamp(when: datetime) -> str:
    return f"{when.year}/{when.month}/{when.day} {when.hour}:{when.minute:02d}:{when.second:02d}"


def render_report(
    pages: Sequence[RankedPage],
    names: Mapping[int, str],
    min_revisions: int,
    limit: int,
    updated: datetime,
) -> str:
    parts = [f"最終更新: {format_timestamp(updated)}", ""]
    if len(pages) >= limit:
        parts.append(f"版数{min_revisions}以上のページは{limit}件以上ありました。")
    if not pages:
        parts.append(f"版数{min_revisions}以上のページはありませんでした。")
        return "\n".join(parts)

    rows = ['{| class="wikitable sortable"', "|-", "! ページID !! ページ名 !! 版数"]
    for p in pages:
        rows.append("|-")
        rows.append(f"| {p.page_id} || {page_link(p, names)} || {p.count}")
    rows.append("|}")
    parts.append("\n".join(rows))
    return "\n".join(parts) + "\n"


def publish_report(ctx: BotContext, now: Optional[datetime] = None) -> int:
    cfg = ctx.cfg
    namespaces = parse_namespaces(str(cfg["HIGHREV_NAMESPACES"]))
    min_revisions = int(cfg["HIGHREV_MIN"])
    limit = int(cfg["HIGHREV_LIMIT"])

    configure_replica(cfg)
    pages = fetch_high_revision_pages(
        ctx.site, namespaces, min_revisions, limit, str(cfg["HIGHREV_EXCLUDE_CATEGORY"])
    )
    ctx.log.info("Fetched %d pages with >= %d revisions.", len(pages), min_revisions)

    tz = timezone(timedelta(hours=int(cfg["TZ_OFFSET_HOURS"])))
    updated = now.astimezone(tz) if now else datetime.now(tz)
    text = render_report(pages, namespace_names(ctx.site, namespaces), min_revisions, limit, updated)

    title = str(cfg["HIGHREV_PAGE"])
    result = edit_page(ctx, title, lambda _old: text, str(cfg["HIGHREV_SUMMARY"]))
    if not result.ok:
        ctx.log.error("Could not save %s (%s).", title, result.outcome.value)
        return 1
    ctx.log.info("結果を %s に保存しました。", title, extra=PUB)
    return 0


def main(debug: bool = False) -> int:
    return run_task(TASK_ID, publish_report, debug=debug, gated=False)


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Publish the high revision count report")
    ap.add_argument("--debug", action="store_true", help="verbose debug logging")
    args = ap.parse_args()
    sys.exit(main(debug=args.debug))
