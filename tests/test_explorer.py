"""Tests for explorer filters and the query engine."""

from __future__ import annotations

import pytest
from conftest import BASE_DATE_MS, DAY_MS, make_raw_message, seed_messages

from gmail_mirror.core.exceptions import InvalidRequestError
from gmail_mirror.core.normalizer import MessageNormalizer
from gmail_mirror.query.explorer import ExplorerFilters, ExplorerQueryEngine, escape_like, split_list
from gmail_mirror.storage.mirror import MirrorStore


@pytest.fixture
def engine(store: MirrorStore, normalizer: MessageNormalizer) -> ExplorerQueryEngine:
    seed_messages(
        store,
        normalizer,
        [
            make_raw_message("a1", sender="Alice <alice@acme.com>", subject="Quarterly report",
                             labels=["INBOX", "CATEGORY_PERSONAL"], size=500,
                             internal_date=BASE_DATE_MS + 1 * DAY_MS),
            make_raw_message("a2", sender="Bob <bob@acme.com>", subject="Lunch?",
                             labels=["INBOX", "UNREAD", "CATEGORY_PERSONAL"], size=1500,
                             internal_date=BASE_DATE_MS + 2 * DAY_MS),
            make_raw_message("p1", sender="Deals <deals@shop.example>", subject="50% off",
                             labels=["CATEGORY_PROMOTIONS"], size=9000,
                             internal_date=BASE_DATE_MS + 3 * DAY_MS),
            make_raw_message("p2", sender="Deals <deals@shop.example>", subject="Flash sale",
                             labels=["INBOX", "UNREAD", "CATEGORY_PROMOTIONS", "STARRED"], size=200,
                             internal_date=BASE_DATE_MS + 4 * DAY_MS),
            make_raw_message("t1", sender="news@paper.example", subject="Old news",
                             labels=["TRASH", "CATEGORY_UPDATES"], size=300,
                             internal_date=BASE_DATE_MS + 5 * DAY_MS),
            make_raw_message("s1", sender="spam@bad.example", subject="Win big",
                             labels=["SPAM"], size=100, internal_date=BASE_DATE_MS + 6 * DAY_MS),
            make_raw_message("sent1", sender="me@example.com", subject="Re: Lunch?",
                             labels=["SENT"], size=400, internal_date=BASE_DATE_MS + 7 * DAY_MS),
        ],
    )
    return ExplorerQueryEngine(store, default_limit=3, browse_max_limit=5, cleanup_max_limit=50)


def ids(page) -> list[str]:
    return [e.message_id for e in page.emails]


class TestHelpers:
    def test_split_list(self) -> None:
        assert split_list(" a@x.com, ,b@y.com ") == ["a@x.com", "b@y.com"]
        assert split_list(None) == []

    def test_escape_like(self) -> None:
        assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


class TestFromMapping:
    def test_empty_mapping_is_default_view(self) -> None:
        assert ExplorerFilters.from_mapping({}) == ExplorerFilters.default()
        assert ExplorerFilters.from_mapping(None).is_trash is False

    def test_parses_camel_case_and_strings(self) -> None:
        filters = ExplorerFilters.from_mapping(
            {"senderDomain": "acme.com", "isUnread": "true", "sizeMin": "1000", "sortBy": "size",
             "sortOrder": "asc", "bogus": "x"}
        )

        assert filters.sender_domain == "acme.com"
        assert filters.is_unread is True
        assert filters.size_min == 1000
        assert filters.sort_by == "size"
        assert filters.is_trash is None

    def test_bad_values_are_dropped(self) -> None:
        filters = ExplorerFilters.from_mapping({"sizeMin": "big", "isUnread": "maybe", "sortBy": "x"})
        assert filters == ExplorerFilters.default()


class TestQuery:
    def test_default_view_hides_trash_and_spam(self, engine: ExplorerQueryEngine) -> None:
        page = engine.query("acct", limit=50)

        assert set(ids(page)) == {"a1", "a2", "p1", "p2", "sent1"}
        assert page.total_size_bytes == 500 + 1500 + 9000 + 200 + 400

    def test_unconstrained_filters_get_default_view(self, engine: ExplorerQueryEngine) -> None:
        page = engine.query("acct", ExplorerFilters(sort_by="size", sort_order="asc"), limit=50)

        assert ids(page) == ["p2", "sent1", "a1", "a2", "p1"]

    def test_default_sort_is_newest_first(self, engine: ExplorerQueryEngine) -> None:
        assert ids(engine.query("acct", limit=5)) == ["sent1", "p2", "p1", "a2", "a1"]

    def test_pagination(self, engine: ExplorerQueryEngine) -> None:
        first = engine.query("acct")
        second = engine.query("acct", page=2)

        assert len(first.emails) == 3
        assert first.pagination.total == 5
        assert first.pagination.total_pages == 2
        assert first.pagination.has_more is True
        assert ids(second) == ["a2", "a1"]
        assert second.pagination.has_more is False

    def test_limits_are_clamped_per_mode(self, engine: ExplorerQueryEngine) -> None:
        assert engine.effective_limit(None) == 3
        assert engine.effective_limit(500) == 5
        assert engine.effective_limit(500, mode="cleanup") == 50
        with pytest.raises(InvalidRequestError):
            engine.effective_limit(10, mode="everything")

    def test_single_sender_matches_substring(self, engine: ExplorerQueryEngine) -> None:
        page = engine.query("acct", ExplorerFilters(sender="ALICE"))
        assert ids(page) == ["a1"]

    def test_multiple_senders_match_exactly(self, engine: ExplorerQueryEngine) -> None:
        page = engine.query("acct", ExplorerFilters(sender="alice@acme.com,deals@shop.example,alice"))
        assert set(ids(page)) == {"a1", "p1", "p2"}

    def test_domain_filter_and_sender_are_anded(self, engine: ExplorerQueryEngine) -> None:
        assert set(ids(engine.query("acct", ExplorerFilters(sender_domain="acme.com, @paper.example")))) == {
            "a1", "a2", "t1"
        }
        assert ids(engine.query("acct", ExplorerFilters(sender="bob", sender_domain="acme.com"))) == ["a2"]

    def test_category_any_of(self, engine: ExplorerQueryEngine) -> None:
        page = engine.query("acct", ExplorerFilters(category="CATEGORY_PERSONAL,SENT"), limit=5)
        assert set(ids(page)) == {"a1", "a2", "sent1"}

    def test_label_ids(self, engine: ExplorerQueryEngine) -> None:
        page = engine.query("acct", ExplorerFilters(label_ids="STARRED"))
        assert ids(page) == ["p2"]

    def test_flags_ranges_and_search(self, engine: ExplorerQueryEngine) -> None:
        assert set(ids(engine.query("acct", ExplorerFilters(is_unread=True)))) == {"a2", "p2"}
        assert ids(engine.query("acct", ExplorerFilters(is_trash=True))) == ["t1"]
        assert ids(engine.query("acct", ExplorerFilters(size_min=1000, size_max=5000))) == ["a2"]
        assert ids(engine.query("acct", ExplorerFilters(search="lunch", is_sent=False))) == ["a2"]
        assert ids(engine.query("acct", ExplorerFilters(search="50%"))) == ["p1"]

    def test_date_range(self, engine: ExplorerQueryEngine) -> None:
        filters = ExplorerFilters(date_from=BASE_DATE_MS + 2 * DAY_MS, date_to=BASE_DATE_MS + 3 * DAY_MS)
        assert ids(engine.query("acct", filters)) == ["p1", "a2"]

    def test_archived_and_sent(self, engine: ExplorerQueryEngine) -> None:
        assert set(ids(engine.query("acct", ExplorerFilters(is_archived=True)))) == {"p1", "sent1"}
        assert ids(engine.query("acct", ExplorerFilters(is_sent=True))) == ["sent1"]

    def test_sort_by_size_ascending(self, engine: ExplorerQueryEngine) -> None:
        page = engine.query("acct", ExplorerFilters(is_trash=False, sort_by="size", sort_order="asc"), limit=5)
        assert ids(page) == ["s1", "p2", "sent1", "a1", "a2"]

    def test_other_accounts_are_invisible(self, engine: ExplorerQueryEngine) -> None:
        assert engine.query("other").pagination.total == 0

    def test_resolve_ids_ignores_pagination(self, engine: ExplorerQueryEngine) -> None:
        assert set(engine.resolve_ids("acct", ExplorerFilters(is_trash=False))) == {
            "a1", "a2", "p1", "p2", "s1", "sent1"
        }


class TestCategoriesAndSuggestions:
    def test_distinct_categories(self, engine: ExplorerQueryEngine) -> None:
        assert engine.distinct_categories("acct") == [
            "CATEGORY_PERSONAL", "CATEGORY_PROMOTIONS", "CATEGORY_UPDATES", "SENT", "SPAM"
        ]

    def test_sender_suggestions_list_domains_first(self, engine: ExplorerQueryEngine) -> None:
        suggestions = engine.sender_suggestions("acct", "acme")

        assert suggestions[0] == {
            "type": "domain", "value": "acme.com", "label": "@acme.com (2 addresses)", "count": 2
        }
        assert {s["value"] for s in suggestions[1:]} == {"alice@acme.com", "bob@acme.com"}
        assert all(s["type"] == "email" for s in suggestions[1:])
