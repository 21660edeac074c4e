"""Tests for the handle index and disposal cascade."""

import pytest

from conduit.errors import ProtocolError
from conduit.errors import UnknownParentError
from conduit.kinds import ObjectKind
from conduit.objects import Browser
from conduit.objects import BrowserContext
from conduit.objects import Page
from conduit.owner import ChannelOwner
from conduit.owner import OwnerState
from conduit.registry import HandleNotFound
from conduit.registry import ObjectRegistry
from tests.fixtures.recording_context import RecordingContext


def _browser_tree(context: RecordingContext) -> ObjectRegistry:
    """Register browser ``b1`` with context ``c1`` holding pages ``p1`` and ``p2``.

    :param context: Recording context owning the registry.
    :returns: Populated registry.
    """
    registry: ObjectRegistry = context.registry
    registry.register("b1", None, "Browser", {"version": "1.0"})
    registry.register("c1", "b1", "BrowserContext")
    registry.register("p1", "c1", "Page", {"url": "https://a.test"})
    registry.register("p2", "c1", "Page")
    return registry


def test_register_builds_variant_for_kind() -> None:
    context: RecordingContext = RecordingContext()
    registry: ObjectRegistry = _browser_tree(context)

    browser: ChannelOwner | HandleNotFound = registry.resolve("b1")
    assert isinstance(browser, Browser)
    assert browser.kind is ObjectKind.BROWSER
    assert browser.version == "1.0"
    assert browser.state is OwnerState.ACTIVE

    page: ChannelOwner | HandleNotFound = registry.resolve("p1")
    assert isinstance(page, Page)
    assert page.url == "https://a.test"
    assert len(registry) == 4
    assert registry.handles() == ["b1", "c1", "p1", "p2"]


def test_register_under_unknown_parent_fails() -> None:
    context: RecordingContext = RecordingContext()
    with pytest.raises(UnknownParentError) as excinfo:
        context.registry.register("p1", "missing", "Page")
    assert excinfo.value.handle == "p1"
    assert excinfo.value.parent_handle == "missing"
    assert "p1" not in context.registry


def test_register_unknown_kind_fails() -> None:
    context: RecordingContext = RecordingContext()
    with pytest.raises(ProtocolError):
        context.registry.register("w1", None, "Worker")
    assert len(context.registry) == 0


def test_register_rejects_empty_handle() -> None:
    context: RecordingContext = RecordingContext()
    with pytest.raises(ProtocolError):
        context.registry.register("", None, "Browser")


def test_live_handle_cannot_be_registered_twice() -> None:
    context: RecordingContext = RecordingContext()
    first: ChannelOwner = context.registry.register("b1", None, "Browser")
    with pytest.raises(ProtocolError):
        context.registry.register("b1", None, "Browser")
    assert context.registry.resolve("b1") is first


def test_disposed_handle_is_never_reused() -> None:
    context: RecordingContext = RecordingContext()
    context.registry.register("b1", None, "Browser")
    context.registry.dispose("b1")

    with pytest.raises(ProtocolError):
        context.registry.register("b1", None, "Browser")
    assert context.registry.is_retired("b1") is True


def test_dispose_cascades_children_before_parents() -> None:
    context: RecordingContext = RecordingContext()
    registry: ObjectRegistry = _browser_tree(context)
    close_order: list[str] = []
    for handle in ("b1", "c1", "p1", "p2"):
        owner: ChannelOwner | HandleNotFound = registry.resolve(handle)
        assert isinstance(owner, ChannelOwner)
        owner.on("close", lambda payload: close_order.append(payload["guid"]))

    disposed: list[ChannelOwner] = registry.dispose("b1", reason="browser closed")

    assert [owner.handle for owner in disposed] == ["p1", "p2", "c1", "b1"]
    assert close_order == ["p1", "p2", "c1", "b1"]
    assert all(owner.is_disposed for owner in disposed)
    assert len(registry) == 0


def test_dispose_subtree_leaves_siblings_live() -> None:
    context: RecordingContext = RecordingContext()
    registry: ObjectRegistry = _browser_tree(context)

    registry.dispose("p1")

    assert "p1" not in registry
    assert "p2" in registry
    assert [child.handle for child in registry.children_of("c1")] == ["p2"]


def test_dispose_is_idempotent_and_ignores_unknown_handles() -> None:
    context: RecordingContext = RecordingContext()
    registry: ObjectRegistry = _browser_tree(context)

    assert len(registry.dispose("c1")) == 3
    assert registry.dispose("c1") == []
    assert registry.dispose("never-existed") == []
    assert registry.handles() == ["b1"]


def test_resolve_reports_retired_and_unknown_handles() -> None:
    context: RecordingContext = RecordingContext()
    registry: ObjectRegistry = _browser_tree(context)
    registry.dispose("p2")

    retired: ChannelOwner | HandleNotFound = registry.resolve("p2")
    unknown: ChannelOwner | HandleNotFound = registry.resolve("zz")

    assert isinstance(retired, HandleNotFound)
    assert retired.retired is True
    assert isinstance(unknown, HandleNotFound)
    assert unknown.retired is False
    assert bool(unknown) is False


def test_parent_and_children_are_resolved_by_handle() -> None:
    context: RecordingContext = RecordingContext()
    registry: ObjectRegistry = _browser_tree(context)

    parent: ChannelOwner | None = registry.parent_of("p1")
    assert isinstance(parent, BrowserContext)
    assert parent.handle == "c1"
    assert registry.parent_of("b1") is None
    assert [child.handle for child in registry.children_of("c1")] == ["p1", "p2"]

    page: ChannelOwner | HandleNotFound = registry.resolve("p1")
    assert isinstance(page, ChannelOwner)
    assert page.parent is parent
    browser: ChannelOwner | HandleNotFound = registry.resolve("b1")
    assert isinstance(browser, Browser)
    assert [item.handle for item in browser.contexts] == ["c1"]
    assert isinstance(parent, BrowserContext)
    assert [item.handle for item in parent.pages] == ["p1", "p2"]


def test_dispose_all_clears_every_tree() -> None:
    context: RecordingContext = RecordingContext()
    registry: ObjectRegistry = _browser_tree(context)
    registry.register("b2", None, "Browser")

    disposed: list[ChannelOwner] = registry.dispose_all("channel closed")

    assert {owner.handle for owner in disposed} == {"b1", "c1", "p1", "p2", "b2"}
    handles: list[str] = [owner.handle for owner in disposed]
    assert handles.index("c1") < handles.index("b1")
    assert len(registry) == 0
