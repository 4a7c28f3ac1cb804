#!/usr/bin/env python3
"""
Run-control gate
========================================

Operators switch NanonaBot2 tasks on and off by editing a status table on
the wiki (``TASKS_PAGE``), a template block of ``| taskId = value`` lines:

    {{利用者:NanonaBot2/tasks/template
    | nnId1 = 1
    | nnId3 = 0
    }}

A task may run only when its value is exactly ``1``. Anything else is a
clean stop (exit 0); a status that cannot be read at all is fatal (exit 1).

People sometimes append a fresh copy of the block instead of editing the
old one, so before reading, a page holding two or more blocks is rewritten
to contain only the last one.

Usage::

    python taskgate.py nnId1     # print the status of one task
    python taskgate.py update    # only compact the status page
"""
from __future__ import annotations

import argparse
import logging
import re
import sys
from typing import Callable, Optional

from bot import (
    LOG,
    BotContext,
    load_settings,
    make_context,
    read_page,
    save_page,
    setup_file_logging,
    task_logger,
)
from wikiparse import UnterminatedTemplateError, escape_regex, find_template

ENABLED = "1"
COMPACT_SUMMARY = "稼働状況更新"


def extract_task_value(text: str, task_id: str) -> Optional[str]:
    """Value of ``| task_id = value`` (stripped), or ``None`` when absent or blank."""
    pattern = re.compile(rf"\|\s*{escape_regex(task_id)}\s*=\s*([^\n|]+)", re.I)
    m = pattern.search(text)
    return (m.group(1).strip() or None) if m else None


def latest_status_block(text: str, prefix: str) -> Optional[str]:
    """
    The last status block when the page holds two or more of them,
    otherwise ``None`` (nothing to compact).

    Raises UnterminatedTemplateError when the last block never closes.
    """
    if text.count(prefix) < 2:
        return None
    last = find_template(text, prefix, occurrence="last")
    return last.wikitext(text) if last else None


def compact_status_page(ctx: BotContext, text: str) -> bool:
    """Overwrite the status page with its last block. True when an edit was made."""
    title = str(ctx.cfg["TASKS_PAGE"])
    prefix = str(ctx.cfg["TASKS_TEMPLATE"])
    try:
        block = latest_status_block(text, prefix)
    except UnterminatedTemplateError as e:
        ctx.log.error("Last status block on %s is malformed (%s); not compacting.", title, e)
        return False
    if block is None:
        ctx.log.debug("Fewer than two status blocks on %s; nothing to compact.", title)
        return False
    result = save_page(ctx, title, block, COMPACT_SUMMARY, minor=True, bot=True)
    if result.ok:
        ctx.log.info("Compacted %s to its last status block.", title)
    return result.ok


def get_task_status(ctx: BotContext, task_id: str) -> Optional[str]:
    """Current value for ``task_id``, or ``None`` when it cannot be read."""
    title = str(ctx.cfg["TASKS_PAGE"])
    try:
        page = read_page(ctx, title)
        if not page.exists:
            ctx.log.error("Status page %s does not exist.", title)
            return None
        if compact_status_page(ctx, page.text or ""):
            page = read_page(ctx, title)
        return extract_task_value(page.text or "", task_id)
    except Exception as e:
        ctx.log.error("Could not read status of %s from %s: %s", task_id, title, e)
        return None


def check_task_status_and_exit(ctx: BotContext, task_id: str) -> bool:
    """Return True when ``task_id`` may run; otherwise exit the process."""
    status = get_task_status(ctx, task_id)
    if status is None:
        ctx.log.error("Status of task %s is unavailable.", task_id)
        sys.exit(1)
    if status != ENABLED:
        ctx.log.info("Task %s is disabled (value: %s).", task_id, status)
        sys.exit(0)
    ctx.log.info("Task %s is enabled.", task_id)
    return True


def update_status_page_only(ctx: BotContext) -> bool:
    title = str(ctx.cfg["TASKS_PAGE"])
    page = read_page(ctx, title)
    if not page.exists:
        ctx.log.error("Status page %s does not exist.", title)
        return False
    compact_status_page(ctx, page.text or "")
    return True

###############################################################################
# Task runner                                                                 #
###############################################################################


def run_task(
    task_id: str,
    body: Callable[[BotContext], int],
    debug: bool = False,
    gated: bool = True,
) -> int:
    """
    Entry point shared by the task scripts: load settings, connect, check the
    run-control gate and run ``body``. Returns the process exit status.
    """
    if debug:
        LOG.setLevel(logging.DEBUG)
    cfg = load_settings()
    setup_file_logging(str(cfg["LOG_DIR"]))
    log = task_logger(task_id)
    try:
        ctx = make_context(cfg, task_id)
        if gated:
            check_task_status_and_exit(ctx, task_id)
        return body(ctx)
    except Exception:
        log.exception("Task %s failed", task_id)
        return 1

###############################################################################
# CLI entry‑point                                                             #
###############################################################################


def cli(argv=None) -> int:
    ap = argparse.ArgumentParser(description="NanonaBot2 run-control status")
    ap.add_argument("command", help="task id to query, or 'update' to compact the status page")
    ap.add_argument("--debug", action="store_true", help="verbose debug logging")
    args = ap.parse_args(argv)

    if args.command == "update":
        def body(ctx: BotContext) -> int:
            return 0 if update_status_page_only(ctx) else 1
    else:
        def body(ctx: BotContext) -> int:
            status = get_task_status(ctx, args.command)
            if status is None:
                ctx.log.error("Could not read the status of %s.", args.command)
                return 1
            print(f"{args.command}: {status}")
            return 0

    return run_task("getTasks", body, debug=args.debug, gated=False)


if __name__ == "__main__":
    sys.exit(cli())
