"""Content repository contract.

The content tree (nodes, parent/child links, levels) belongs to the host
system. The split service only needs the queries below plus structural change
notifications. InMemoryContentRepository is what tests and local dev use.
"""
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass
class ContentNode:
    id: int
    parent_id: Optional[int]
    level: int
    title: str = ""


class StructureListener(ABC):
    """Receives structural change events from a ContentRepository"""

    @abstractmethod
    def on_moved(self, node_id: int) -> None:
        ...

    @abstractmethod
    def on_inserted(self, node_id: int) -> None:
        ...

    @abstractmethod
    def on_deleted(self, node_id: int) -> None:
        ...


class ContentRepository(ABC):

    def __init__(self):
        self._listeners: List[StructureListener] = []

    def subscribe(self, listener: StructureListener) -> None:
        self._listeners.append(listener)

    @abstractmethod
    def get_node(self, node_id: int) -> Optional[ContentNode]:
        ...

    @abstractmethod
    def children_of(self, node_id: int) -> List[ContentNode]:
        ...

    @abstractmethod
    def descendants_of(self, node_id: int) -> List[ContentNode]:
        """All descendants, depth-first (pre-order)"""

    def is_descendant_of(self, ancestor_id: int, node_id: int) -> bool:
        node = self.get_node(node_id)
        while node is not None and node.parent_id is not None:
            if node.parent_id == ancestor_id:
                return True
            node = self.get_node(node.parent_id)
        return False

    def level_of(self, node_id: int) -> Optional[int]:
        node = self.get_node(node_id)
        return node.level if node else None

    def _emit(self, event: str, node_id: int) -> None:
        for listener in list(self._listeners):
            getattr(listener, event)(node_id)


class InMemoryContentRepository(ContentRepository):
    """Simple tree kept in dicts. Levels start at 1 for root nodes."""

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._nodes: Dict[int, ContentNode] = {}
        self._children: Dict[Optional[int], List[int]] = {None: []}

    def add_node(self, node_id: int, parent_id: Optional[int] = None, title: str = "") -> ContentNode:
        with self._lock:
            if node_id in self._nodes:
                raise ValueError(f"Node {node_id} already exists")
            if parent_id is not None and parent_id not in self._nodes:
                raise ValueError(f"Parent node {parent_id} does not exist")
            level = 1 if parent_id is None else self._nodes[parent_id].level + 1
            node = ContentNode(id=node_id, parent_id=parent_id, level=level, title=title)
            self._nodes[node_id] = node
            self._children.setdefault(parent_id, []).append(node_id)
            self._children.setdefault(node_id, [])
        self._emit("on_inserted", node_id)
        return node

    def move_node(self, node_id: int, new_parent_id: Optional[int]) -> None:
        with self._lock:
            node = self._nodes[node_id]
            if new_parent_id is not None:
                if new_parent_id == node_id or self.is_descendant_of(node_id, new_parent_id):
                    raise ValueError("Cannot move a node under itself")
            self._children[node.parent_id].remove(node_id)
            self._children.setdefault(new_parent_id, []).append(node_id)
            node.parent_id = new_parent_id
            self._relevel(node_id)
        self._emit("on_moved", node_id)

    def delete_node(self, node_id: int) -> None:
        """Delete a node and its whole subtree (deepest nodes reported first)"""
        with self._lock:
            removed = [n.id for n in self.descendants_of(node_id)]
            removed.reverse()
            removed.append(node_id)
            node = self._nodes[node_id]
            self._children[node.parent_id].remove(node_id)
            for nid in removed:
                self._nodes.pop(nid, None)
                self._children.pop(nid, None)
        for nid in removed:
            self._emit("on_deleted", nid)

    def get_node(self, node_id: int) -> Optional[ContentNode]:
        return self._nodes.get(node_id)

    def children_of(self, node_id: int) -> List[ContentNode]:
        return [self._nodes[cid] for cid in self._children.get(node_id, [])]

    def descendants_of(self, node_id: int) -> List[ContentNode]:
        out = []
        stack = list(reversed(self._children.get(node_id, [])))
        while stack:
            current = self._nodes[stack.pop()]
            out.append(current)
            stack.extend(reversed(self._children.get(current.id, [])))
        return out

    def _relevel(self, node_id: int) -> None:
        node = self._nodes[node_id]
        node.level = 1 if node.parent_id is None else self._nodes[node.parent_id].level + 1
        for child_id in self._children.get(node_id, []):
            self._relevel(child_id)
