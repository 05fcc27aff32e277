from dataclasses import dataclass

import pytest

from nezha.registry import Registry


@dataclass
class Item:
    id: int
    owner: str

    def has_permission(self, ctx):
        return ctx == "admin" or ctx == self.owner


@pytest.fixture
def registry():
    items = {3: Item(3, "bob"), 1: Item(1, "alice"), 2: Item(2, "alice")}
    return Registry(items)


def test_get_existing_and_missing(registry):
    assert registry.get(1).owner == "alice"
    assert registry.get(42) is None


def test_get_list_is_a_copy(registry):
    listing = registry.get_list()
    listing.pop(1)
    assert 1 in registry
    assert len(registry) == 3


def test_sorted_list_defaults_to_entry_order_and_is_copied(registry):
    sorted_view = registry.get_sorted_list()
    assert [i.id for i in sorted_view] == [3, 1, 2]
    sorted_view.clear()
    assert len(registry.get_sorted_list()) == 3


def test_explicit_sorted_entries_are_kept():
    a, b = Item(1, "x"), Item(2, "y")
    reg = Registry({1: a, 2: b}, sorted_entries=[b, a])
    assert reg.get_sorted_list() == [b, a]


def test_items_yields_every_pair(registry):
    pairs = dict(registry.items())
    assert pairs == registry.get_list()


def test_items_can_stop_early(registry):
    first = next(iter(registry.items()))
    assert first[0] in registry


def test_check_permission_owner(registry):
    assert registry.check_permission("alice", [1, 2])
    assert not registry.check_permission("alice", [1, 3])


def test_check_permission_ignores_unknown_ids(registry):
    assert registry.check_permission("bob", [3, 99])
    assert registry.check_permission("nobody", [])


def test_check_permission_admin(registry):
    assert registry.check_permission("admin", iter([1, 2, 3]))


def test_resort_orders_by_key():
    reg = Registry({5: Item(5, "x"), 2: Item(2, "x"), 9: Item(9, "x")})
    assert [i.id for i in reg.get_sorted_list()] == [5, 2, 9]
    reg._resort(key=lambda v: v.id)
    assert [i.id for i in reg.get_sorted_list()] == [2, 5, 9]