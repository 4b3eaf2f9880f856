"""Tests for relation graph resolution."""

from unittest.mock import AsyncMock

import pytest

from reqcov.core.models import Relation, WorkItem
from reqcov.services.relations import RelationGraphResolver
from tests.factories import WORK_ITEM_URL, make_requirement, work_item_payload

TESTED_BY_REVERSE = "Microsoft.VSTS.Common.TestedBy-Reverse"
RELATED = "System.LinkTypes.Related"


def _relation(rel: str, target: int) -> Relation:
    return Relation(rel=rel, url=WORK_ITEM_URL.format(id=target))


@pytest.fixture
def targets() -> dict[int, WorkItem]:
    """Relation targets: two requirements, an open bug and a closed bug."""
    payloads = [
        work_item_payload(10, {"System.WorkItemType": "Requirement", "System.Title": "SR0001 Base"}),
        work_item_payload(
            11,
            {"System.WorkItemType": "Requirement", "Custom.CustomerId": "SR0002-3", "System.Title": "Child"},
        ),
        work_item_payload(20, {"System.WorkItemType": "Bug", "System.State": "Active"}),
        work_item_payload(21, {"System.WorkItemType": "Bug", "System.State": "Closed"}),
        work_item_payload(30, {"System.WorkItemType": "Task"}),
    ]
    return {payload["id"]: WorkItem.from_payload(payload) for payload in payloads}


@pytest.fixture
def fetch_work_items(targets):
    """Batch fetch returning the known targets."""

    async def fetch(ids):
        return [targets[i] for i in ids if i in targets]

    return AsyncMock(side_effect=fetch)


@pytest.fixture
def resolver(fetch_work_items) -> RelationGraphResolver:
    return RelationGraphResolver(
        fetch_work_items,
        requirement_relation_types=[TESTED_BY_REVERSE],
        bug_relation_types=[RELATED],
        terminal_states=["closed", "resolved"],
    )


class TestRelationGraphResolver:
    """Tests for RelationGraphResolver.resolve_links."""

    @pytest.mark.asyncio
    async def test_classifies_requirements_and_bugs(self, resolver):
        edges = {
            500: [
                _relation(TESTED_BY_REVERSE, 10),
                _relation(TESTED_BY_REVERSE, 11),
                _relation(RELATED, 20),
                _relation(RELATED, 21),
            ]
        }

        linked = await resolver.resolve_links([500], edges)

        entry = linked[500]
        assert entry.full_codes == {"SR0001", "SR0002-3"}
        assert entry.base_keys == {"SR0001", "SR0002"}
        assert entry.bug_ids == {20}

    @pytest.mark.asyncio
    async def test_related_link_to_requirement_is_not_coverage(self, resolver):
        linked = await resolver.resolve_links([500], {500: [_relation(RELATED, 10)]})

        assert linked[500].full_codes == set()
        assert linked[500].bug_ids == set()

    @pytest.mark.asyncio
    async def test_other_relation_types_are_ignored(self, resolver, fetch_work_items):
        edges = {500: [_relation("System.LinkTypes.Hierarchy-Forward", 10), _relation(TESTED_BY_REVERSE, 30)]}

        linked = await resolver.resolve_links([500], edges)

        assert linked[500].full_codes == set()
        fetch_work_items.assert_awaited_once_with([30])

    @pytest.mark.asyncio
    async def test_every_test_case_gets_an_entry(self, resolver, fetch_work_items):
        linked = await resolver.resolve_links([500, 501], {})

        assert set(linked) == {500, 501}
        assert linked[501].full_codes == set()
        fetch_work_items.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_targets_are_fetched_once(self, resolver, fetch_work_items):
        edges = {
            500: [_relation(TESTED_BY_REVERSE, 10)],
            501: [_relation(TESTED_BY_REVERSE, 10), _relation(RELATED, 20)],
        }

        linked = await resolver.resolve_links([500, 501], edges)

        fetch_work_items.assert_awaited_once_with([10, 20])
        assert linked[501].full_codes == {"SR0001"}

    @pytest.mark.asyncio
    async def test_known_requirements_use_their_recorded_code(self, fetch_work_items):
        resolver = RelationGraphResolver(
            fetch_work_items,
            requirements=[make_requirement(10, "SR0001-4")],
            requirement_relation_types=[TESTED_BY_REVERSE],
        )

        linked = await resolver.resolve_links([500], {500: [_relation(TESTED_BY_REVERSE, 10)]})

        assert linked[500].full_codes == {"SR0001-4"}
