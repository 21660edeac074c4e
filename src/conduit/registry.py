"""Index of live remote objects keyed by engine handle."""

import logging
import threading

from conduit.errors import ProtocolError
from conduit.errors import UnknownParentError
from conduit.kinds import ObjectKind
from conduit.kinds import parse_kind
from conduit.objects import create_owner
from conduit.owner import ChannelContext
from conduit.owner import ChannelOwner

logger = logging.getLogger(__name__)


class HandleNotFound:
    """Typed lookup failure for a handle that is not live."""

    handle: str
    retired: bool

    def __init__(self, handle: str, retired: bool) -> None:
        """Initialize a lookup failure.

        :param handle: Handle that was looked up.
        :param retired: ``True`` when the handle was live once and has been disposed.
        """
        self.handle = handle
        self.retired = retired

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"HandleNotFound(handle={self.handle!r}, retired={self.retired})"


class ObjectRegistry:
    """Own the handle → proxy index and the parent/child tree.

    Children are recorded here by handle; proxies never hold references to
    each other. A disposed handle is retired and can never be registered again.
    """

    _context: ChannelContext
    _lock: threading.RLock
    _owners: dict[str, ChannelOwner]
    _children: dict[str, list[str]]
    _retired: set[str]

    def __init__(self, context: ChannelContext) -> None:
        """Initialize an empty registry.

        :param context: Channel context handed to every proxy created here.
        """
        self._context = context
        self._lock = threading.RLock()
        self._owners = {}
        self._children = {}
        self._retired = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)

    def __contains__(self, handle: object) -> bool:
        with self._lock:
            return handle in self._owners

    def handles(self) -> list[str]:
        """Return live handles in registration order.

        :returns: Handle list.
        """
        with self._lock:
            return list(self._owners.keys())

    def is_retired(self, handle: str) -> bool:
        """Report whether ``handle`` was disposed on this channel.

        :param handle: Handle to check.
        :returns: ``True`` for retired handles.
        """
        with self._lock:
            return handle in self._retired

    def register(
        self,
        handle: str,
        parent_handle: str | None,
        kind: ObjectKind | str,
        initializer: dict[str, object] | None = None,
    ) -> ChannelOwner:
        """Create and index the proxy for a newly created remote object.

        :param handle: Engine-assigned handle.
        :param parent_handle: Creating object's handle, or ``None`` at top level.
        :param kind: Type tag from the creation event.
        :param initializer: Engine-supplied initial attributes.
        :returns: Active proxy.
        :raises UnknownParentError: If ``parent_handle`` is not live.
        :raises ProtocolError: If the handle is invalid or reused, or the kind is unknown.
        """
        if isinstance(handle, str) is False or len(handle) == 0:
            raise ProtocolError(f"Object handle must be a non-empty string, got {handle!r}")
        object_kind: ObjectKind = parse_kind(kind)

        with self._lock:
            is_live: bool = handle in self._owners
            is_retired: bool = handle in self._retired
            if is_live is True or is_retired is True:
                raise ProtocolError(f"Engine reused handle {handle!r}")
            if parent_handle is not None:
                parent_is_live: bool = parent_handle in self._owners
                if parent_is_live is False:
                    raise UnknownParentError(handle, parent_handle)

            owner: ChannelOwner = create_owner(
                self._context,
                object_kind,
                handle,
                parent_handle,
                initializer,
            )
            self._owners[handle] = owner
            self._children[handle] = []
            if parent_handle is not None:
                self._children[parent_handle].append(handle)
            owner._activate()

        logger.debug("Registered %s %r under %r", object_kind.value, handle, parent_handle)
        return owner

    def resolve(self, handle: str) -> ChannelOwner | HandleNotFound:
        """Look up the live proxy for ``handle``.

        :param handle: Handle to resolve.
        :returns: Proxy, or :class:`HandleNotFound` when the handle is not live.
        """
        with self._lock:
            owner: ChannelOwner | None = self._owners.get(handle)
            if owner is not None:
                return owner
            return HandleNotFound(handle, handle in self._retired)

    def parent_of(self, handle: str) -> ChannelOwner | None:
        """Return the live parent proxy of ``handle``.

        :param handle: Child handle.
        :returns: Parent proxy or ``None``.
        """
        with self._lock:
            owner: ChannelOwner | None = self._owners.get(handle)
            if owner is None or owner.parent_handle is None:
                return None
            return self._owners.get(owner.parent_handle)

    def children_of(self, handle: str) -> list[ChannelOwner]:
        """Return live child proxies of ``handle`` in creation order.

        :param handle: Parent handle.
        :returns: Child proxies.
        """
        with self._lock:
            child_handles: list[str] = self._children.get(handle, [])
            return [self._owners[child_handle] for child_handle in child_handles]

    def dispose(self, handle: str, reason: str | None = None) -> list[ChannelOwner]:
        """Dispose ``handle`` and every descendant, children before parents.

        Each proxy fires its ``close`` notification before it leaves the index.
        Unknown or already-disposed handles are a no-op.

        :param handle: Handle to dispose.
        :param reason: Optional engine-supplied reason.
        :returns: Disposed proxies in disposal order.
        """
        with self._lock:
            is_live: bool = handle in self._owners
            if is_live is False:
                return []
            order: list[str] = self._subtree_post_order(handle)
            root_parent: str | None = self._owners[handle].parent_handle
            if root_parent is not None:
                siblings: list[str] | None = self._children.get(root_parent)
                if siblings is not None and handle in siblings:
                    siblings.remove(handle)

        disposed: list[ChannelOwner] = []
        for member in order:
            with self._lock:
                owner: ChannelOwner | None = self._owners.get(member)
            if owner is None:
                continue
            owner._dispose(reason)
            with self._lock:
                self._owners.pop(member, None)
                self._children.pop(member, None)
                self._retired.add(member)
            disposed.append(owner)

        logger.debug("Disposed %r and %d descendants", handle, len(disposed) - 1)
        return disposed

    def dispose_all(self, reason: str | None = None) -> list[ChannelOwner]:
        """Dispose every live proxy, one top-level subtree at a time.

        :param reason: Reason passed to ``close`` listeners.
        :returns: Disposed proxies in disposal order.
        """
        disposed: list[ChannelOwner] = []
        while True:
            with self._lock:
                roots: list[str] = [
                    handle
                    for handle, owner in self._owners.items()
                    if owner.parent_handle is None or owner.parent_handle not in self._owners
                ]
            if len(roots) == 0:
                return disposed
            for root in roots:
                disposed.extend(self.dispose(root, reason))

    def _subtree_post_order(self, handle: str) -> list[str]:
        """List ``handle`` and its descendants with every child before its parent.

        :param handle: Subtree root.
        :returns: Handles in post-order.
        """
        order: list[str] = []
        stack: list[tuple[str, bool]] = [(handle, False)]
        while len(stack) > 0:
            current, expanded = stack.pop()
            if expanded is True:
                order.append(current)
                continue
            stack.append((current, True))
            child_handles: list[str] = self._children.get(current, [])
            for child_handle in reversed(child_handles):
                stack.append((child_handle, False))
        return order
