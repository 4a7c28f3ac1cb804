"""Shared pytest fixtures for NanonaBot2 tests."""

import os

# pywikibot warns (or refuses) at import time without a user-config.py
os.environ.setdefault("PYWIKIBOT_NO_USER_CONFIG", "2")

import pytest
from unittest.mock import MagicMock, patch
from pywikibot.exceptions import PageCreatedConflictError

import bot


class FakeWiki:
    """In-memory stand-in for ``pywikibot.Page``, keyed by title."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.saves = []  # (title, text, save kwargs)
        self.save_errors = []  # raised by the next save() calls, in order
        self.nochange = False
        self.revid = 100
        self.reads = 0

    def _get(self, title):
        self.reads += 1
        return self.pages[title]

    def page(self, site, title):
        wiki = self
        page = MagicMock(name=f"Page({title})")
        page.exists.side_effect = lambda: title in wiki.pages
        page.get.side_effect = lambda **kw: wiki._get(title)
        page.latest_revision_id = wiki.revid

        def save(**kwargs):
            if wiki.save_errors:
                raise wiki.save_errors.pop(0)
            if kwargs.get("createonly") and title in wiki.pages:
                raise PageCreatedConflictError(page)
            wiki.saves.append((title, page.text, kwargs))
            if wiki.nochange:
                return
            wiki.pages[title] = page.text
            wiki.revid += 1
            page.latest_revision_id = wiki.revid

        page.save.side_effect = save
        return page


@pytest.fixture
def mock_site():
    """Create a mock pywikibot APISite."""
    site = MagicMock()
    site.hostname.return_value = "ja.wikipedia.org"
    site.apipath.return_value = "/w/api.php"
    site.dbName.return_value = "jawiki"
    return site


@pytest.fixture
def ctx(mock_site):
    """A BotContext around the mock site with default settings."""
    return bot.BotContext(mock_site, bot.DEFAULT_CFG.copy(), bot.task_logger("test"))


@pytest.fixture
def fake_wiki():
    """Route every pywikibot.Page created through bot.py to a FakeWiki."""
    wiki = FakeWiki()
    with patch("bot.pywikibot.Page", side_effect=wiki.page):
        yield wiki
