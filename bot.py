#!/usr/bin/env python3
"""
NanonaBot2 runtime
========================================

Shared plumbing for the NanonaBot2 maintenance tasks on the Japanese
Wikipedia. Every task script:

* loads its settings from environment variables (``load_settings``)
* logs INFO to stdout, WARNING+ to stderr and appends to ``log/logs.txt``
* logs to the wiki via pywikibot through an explicit ``BotContext``
* reads and writes pages only through the helpers below

Page writes come in three flavours: ``create_page`` (refuses to overwrite),
``save_page`` (plain overwrite) and ``edit_page``, which re-reads the page,
applies a pure ``old text -> new text`` function and retries on edit
conflicts.
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# Standard library imports
# ---------------------------------------------------------------------------
import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

# ---------------------------------------------------------------------------
# Third‑party dependencies
# ---------------------------------------------------------------------------
import pywikibot
from pywikibot.exceptions import (
    EditConflictError,
    PageCreatedConflictError,
    PageSaveRelatedError,
)
from pywikibot.login import ClientLoginManager
from pywikibot.site import APISite

###############################################################################
# Configuration                                                               #
###############################################################################

# Default configuration values
DEFAULT_CFG: Dict[str, object] = {
    "SITE": "ja.wikipedia.org",
    "MW_USERNAME": "",
    "MW_PASSWORD": "",
    "USER_AGENT": "nanonaBot2 (Toolforge)",
    "TASKS_PAGE": "利用者:NanonaBot2/tasks",
    "TASKS_TEMPLATE": "{{利用者:NanonaBot2/tasks/template",
    "LOG_DIR": "log",
    "EDIT_RETRIES": 3,
    "TZ_OFFSET_HOURS": 9,
    # day-ahead discussion pages
    "CPAGE_TEMPLATE": "プロジェクト:カテゴリ関連/議論/日別ページ雛形",
    "CPAGE_TITLE_FORMAT": "プロジェクト:カテゴリ関連/議論/{year}年/{month}月{day}日",
    "CPAGE_SUMMARY": "Bot: 議論ページの作成",
    # sandbox reset
    "SANDBOX_REV_LIMIT": 4500,
    "SANDBOX_MAIN": "Wikipedia:サンドボックス",
    "SANDBOX_BOARD_PAGE": "Wikipedia:管理者伝言板/各種初期化依頼",
    # high revision report
    "HIGHREV_MIN": 4500,
    "HIGHREV_LIMIT": 500,
    "HIGHREV_PAGE": "利用者:NanonaBot2/版数の多いページ一覧",
    "HIGHREV_EXCLUDE_CATEGORY": "履歴を分離したページ",
    "HIGHREV_NAMESPACES": "0,1,4,5,6,7,8,9,10,11,12,13,14,15",
    "HIGHREV_SUMMARY": "Bot:版数の多いページ一覧を更新",
    # wiki replica database
    "TOOL_REPLICA_USER": "",
    "TOOL_REPLICA_PASSWORD": "",
    "REPLICA_CNF": "~/replica.my.cnf",
    "REPLICA_HOST_FORMAT": "{0}.analytics.db.svc.wikimedia.cloud",
    "REPLICA_DB_FORMAT": "{0}_p",
}

INT_KEYS = {
    "EDIT_RETRIES",
    "TZ_OFFSET_HOURS",
    "SANDBOX_REV_LIMIT",
    "HIGHREV_MIN",
    "HIGHREV_LIMIT",
}

###############################################################################
# Logging                                                                     #
###############################################################################

# Extra for log lines that also go to the public log file.
PUB = {"pub": True}


class MaxLevelFilter(logging.Filter):
    """Allow through only records <= a given level."""
    def __init__(self, level: int):
        super().__init__()
        self.max_level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


class RecordDefaults(logging.Filter):
    """Give every record the ``task`` and ``pub`` attributes the formatter expects."""
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "task"):
            record.task = "-"
        if not hasattr(record, "pub"):
            record.pub = False
        return True


class PubFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return bool(getattr(record, "pub", False))


class TaskLogAdapter(logging.LoggerAdapter):
    """Stamp a task id on every record while keeping per-call ``extra``."""
    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


LOG = logging.getLogger("nanonabot")
LOG.setLevel(os.getenv("LOG_LEVEL", "INFO"))

fmt = logging.Formatter("%(asctime)s %(levelname)s [%(task)s] %(message)s")

# Handler for INFO and DEBUG → stdout
h_info = logging.StreamHandler(sys.stdout)
h_info.setLevel(logging.DEBUG)
h_info.addFilter(MaxLevelFilter(logging.INFO))

# Handler for WARNING and above → stderr
h_err = logging.StreamHandler(sys.stderr)
h_err.setLevel(logging.WARNING)

for _h in (h_info, h_err):
    _h.addFilter(RecordDefaults())
    _h.setFormatter(fmt)
    LOG.addHandler(_h)


def setup_file_logging(log_dir: str) -> None:
    """Append every record to ``logs.txt`` and public ones to ``publogs.txt``."""
    log_dir = os.path.expanduser(log_dir)
    os.makedirs(log_dir, exist_ok=True)
    existing = {getattr(h, "baseFilename", None) for h in LOG.handlers}
    for name, only_pub in (("logs.txt", False), ("publogs.txt", True)):
        path = os.path.abspath(os.path.join(log_dir, name))
        if path in existing:
            continue
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.addFilter(RecordDefaults())
        if only_pub:
            fh.addFilter(PubFilter())
        fh.setFormatter(fmt)
        LOG.addHandler(fh)


def task_logger(task_id: str) -> TaskLogAdapter:
    return TaskLogAdapter(LOG, {"task": task_id})

###############################################################################
# Runtime helpers                                                             #
###############################################################################


def load_settings() -> Dict[str, object]:
    """Load settings from environment variables, falling back to defaults."""
    cfg = DEFAULT_CFG.copy()
    for env_var in DEFAULT_CFG:
        value = os.getenv(env_var)
        if value is None:
            continue
        if env_var in INT_KEYS:
            try:
                cfg[env_var] = int(value)
            except ValueError:
                LOG.warning("Invalid %s value: %s, using default", env_var, value)
        else:
            cfg[env_var] = value
    return cfg


def connect(cfg: Dict[str, object]) -> APISite:
    """
    Connect/login via pywikibot.

    Expected settings:
        SITE: e.g. "ja.wikipedia.org" (host form) – we derive code/family
        MW_USERNAME: "UserName@BotPasswordName" (BotPassword username form) *optional*
        MW_PASSWORD: password for the BotPassword (optional; else rely on user-config).
    """
    host = str(cfg["SITE"]).lower()
    # crude parse: "<code>.wikipedia.org" → ("ja", "wikipedia")
    if host.endswith(".org"):
        parts = host.split(".")
        code = parts[0]
        family = parts[1] if len(parts) > 1 else "wikipedia"
    else:
        code, family = "ja", "wikipedia"

    if cfg.get("USER_AGENT"):
        pywikibot.config.user_agent_description = str(cfg["USER_AGENT"])

    bot_user = str(cfg["MW_USERNAME"])
    bot_pass = str(cfg["MW_PASSWORD"])
    main_user = bot_user.split("@")[0] or None
    site = pywikibot.Site(code=code, fam=family, user=main_user)

    if bot_user and bot_pass:
        # BotPassword usernames are "MainAccount@AppName"
        ClientLoginManager(password=bot_pass, site=site, user=bot_user).login()
        LOG.info("Logged in as %s via BotPassword.", bot_user)
    site.login()
    return site


@dataclass
class BotContext:
    """Everything a task needs to talk to the wiki; passed explicitly."""
    site: APISite
    cfg: Dict[str, object]
    log: logging.LoggerAdapter


def make_context(cfg: Dict[str, object], task_id: str) -> BotContext:
    return BotContext(connect(cfg), cfg, task_logger(task_id))

###############################################################################
# Document store                                                              #
###############################################################################


class Outcome(Enum):
    SUCCESS = "success"
    NOCHANGE = "nochange"
    CONFLICT = "conflict"
    FAILURE = "failure"


@dataclass
class PageRead:
    title: str
    exists: bool
    text: Optional[str] = None


@dataclass
class EditResult:
    title: str
    outcome: Outcome
    revid: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.NOCHANGE)


def read_page(ctx: BotContext, title: str) -> PageRead:
    """Fetch ``title``; ``exists=False`` (text ``None``) when the page is absent."""
    page = pywikibot.Page(ctx.site, title)
    if not page.exists():
        return PageRead(title, False)
    return PageRead(title, True, page.get(force=True, get_redirect=True))


def create_page(ctx: BotContext, title: str, text: str, summary: str) -> EditResult:
    """Create ``title``; never overwrites an existing page."""
    page = pywikibot.Page(ctx.site, title)
    page.text = text
    try:
        page.save(summary=summary, minor=False, createonly=True)
    except PageCreatedConflictError as e:
        ctx.log.warning("Page %s was created by someone else: %s", title, e)
        return EditResult(title, Outcome.CONFLICT, error=str(e))
    except PageSaveRelatedError as e:
        ctx.log.error("Could not create %s: %s", title, e)
        return EditResult(title, Outcome.FAILURE, error=str(e))
    return EditResult(title, Outcome.SUCCESS, page.latest_revision_id)


def save_page(
    ctx: BotContext,
    title: str,
    text: str,
    summary: str,
    minor: bool = True,
    bot: bool = True,
) -> EditResult:
    """Overwrite ``title`` with ``text``. ``NOCHANGE`` when no revision was made."""
    page = pywikibot.Page(ctx.site, title)
    old_revid = page.latest_revision_id if page.exists() else None
    page.text = text
    try:
        page.save(summary=summary, minor=minor, bot=bot)
    except EditConflictError as e:
        ctx.log.warning("Edit conflict on %s: %s", title, e)
        return EditResult(title, Outcome.CONFLICT, old_revid, str(e))
    except PageSaveRelatedError as e:
        ctx.log.error("Could not save %s: %s", title, e)
        return EditResult(title, Outcome.FAILURE, old_revid, str(e))
    new_revid = page.latest_revision_id
    if old_revid is not None and new_revid == old_revid:
        return EditResult(title, Outcome.NOCHANGE, new_revid)
    return EditResult(title, Outcome.SUCCESS, new_revid)


def edit_page(
    ctx: BotContext,
    title: str,
    updater: Callable[[str], Optional[str]],
    summary: str,
    minor: bool = False,
    bot: bool = True,
    retries: Optional[int] = None,
) -> EditResult:
    """
    Read-modify-write ``title`` with the pure function ``updater``.

    ``updater`` receives the current text ("" for a missing page) and returns
    the new text, or ``None`` to leave the page alone. On an edit conflict
    the page is fetched again and ``updater`` re-applied, up to ``retries``
    attempts (``EDIT_RETRIES`` by default).
    """
    attempts = retries if retries is not None else int(ctx.cfg["EDIT_RETRIES"])
    last_error = None
    for attempt in range(1, attempts + 1):
        page = pywikibot.Page(ctx.site, title)
        old = page.get(force=True, get_redirect=True) if page.exists() else ""
        new = updater(old)
        if new is None or new == old:
            ctx.log.debug("No change needed for %s.", title)
            return EditResult(title, Outcome.NOCHANGE)
        page.text = new
        try:
            page.save(summary=summary, minor=minor, bot=bot)
        except EditConflictError as e:
            last_error = str(e)
            ctx.log.warning("Edit conflict on %s (attempt %d/%d); re-reading.",
                            title, attempt, attempts)
            continue
        except PageSaveRelatedError as e:
            ctx.log.error("Could not save %s: %s", title, e)
            return EditResult(title, Outcome.FAILURE, error=str(e))
        return EditResult(title, Outcome.SUCCESS, page.latest_revision_id)
    return EditResult(title, Outcome.CONFLICT, error=last_error)
