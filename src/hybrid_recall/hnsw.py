"""
Pure-Python HNSW (Hierarchical Navigable Small World) index.

Approximate nearest-neighbour search over fixed-length vectors using cosine
distance.  The graph is an arena of nodes keyed by label; adjacency is stored
as per-layer sets of labels, never as object references.

Binary snapshot layout (all integers little-endian)::

    header  magic:u32  version:u8  dimensions:u32  M:u16  node_count:u32
            entry_point:i32 (-1 when empty)  max_layer:u32
    node*   label_len:u16  label:utf-8  vector:f32[dimensions]
            layer:u32  layer_count:u32
            (layer_no:u32  neighbor_count:u32  neighbor_index:u32[count])*

Neighbour references are positions in the snapshot's node order.
"""

from __future__ import annotations

import heapq
import logging
import math
import os
import random
import struct
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import NamedTuple

import numpy as np

from .errors import DimensionMismatchError, IndexFormatError

logger = logging.getLogger(__name__)

MAGIC_NUMBER = 0x484E5357  # "HNSW"
FORMAT_VERSION = 1

DEFAULT_M = 16
DEFAULT_EF_CONSTRUCTION = 200
DEFAULT_EF_SEARCH = 50

_HEADER = struct.Struct("<IBIHIiI")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U32_PAIR = struct.Struct("<II")


class Neighbor(NamedTuple):
    label: str
    distance: float


@dataclass
class _Node:
    label: str
    vector: np.ndarray
    norm: float
    layer: int
    connections: dict[int, set[str]] = field(default_factory=dict)


class HNSWIndex:
    """
    In-memory multi-layer proximity graph.

    Parameters
    ----------
    dimensions:
        Length every stored and queried vector must have.
    m:
        Target out-degree per layer.  Neighbour lists are pruned back to
        ``2 * m`` once they overflow.
    ef_construction:
        Beam width used while inserting.
    seed:
        Optional seed for the layer-assignment RNG (useful in tests).
    """

    def __init__(
        self,
        dimensions: int,
        m: int = DEFAULT_M,
        ef_construction: int = DEFAULT_EF_CONSTRUCTION,
        seed: int | None = None,
    ) -> None:
        if dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        if m < 2:
            raise ValueError(f"m must be at least 2, got {m}")

        self.dimensions = dimensions
        self.m = m
        self.ef_construction = ef_construction
        self.ml = 1.0 / math.log(m)

        self._nodes: dict[str, _Node] = {}
        # label -> labels of nodes holding an edge to it (on any layer)
        self._inbound: dict[str, set[str]] = {}
        self._entry_point: str | None = None
        self._max_layer = 0
        self._rng = random.Random(seed)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, label: object) -> bool:
        return label in self._nodes

    @property
    def size(self) -> int:
        return len(self._nodes)

    @property
    def entry_point(self) -> str | None:
        return self._entry_point

    @property
    def max_layer(self) -> int:
        return self._max_layer

    def labels(self) -> Iterator[str]:
        return iter(list(self._nodes))

    def get_vector(self, label: str) -> np.ndarray | None:
        node = self._nodes.get(label)
        return None if node is None else node.vector.copy()

    def neighbors(self, label: str, layer: int = 0) -> set[str]:
        node = self._nodes.get(label)
        if node is None:
            return set()
        return set(node.connections.get(layer, ()))

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add(self, label: str, vector: Sequence[float] | np.ndarray) -> None:
        """Insert *vector* under *label*, replacing any existing entry."""
        vec = self._as_vector(vector)

        if label in self._nodes:
            self.remove(label)

        layer = self._random_layer()
        node = _Node(
            label=label,
            vector=vec,
            norm=float(np.linalg.norm(vec)),
            layer=layer,
            connections={lvl: set() for lvl in range(layer + 1)},
        )
        self._nodes[label] = node
        self._inbound.setdefault(label, set())

        if self._entry_point is None:
            self._entry_point = label
            self._max_layer = layer
            return

        current = self._entry_point

        # Greedy descent through the layers above the new node's top layer.
        for lvl in range(self._max_layer, layer, -1):
            found = self._search_layer(vec, node.norm, current, 1, lvl)
            if found:
                current = found[0].label

        for lvl in range(min(layer, self._max_layer), -1, -1):
            candidates = self._search_layer(vec, node.norm, current, self.ef_construction, lvl)
            for neighbor in self._select_neighbors(candidates, self.m):
                if neighbor.label == label:
                    continue
                self._link(label, neighbor.label, lvl)
                self._link(neighbor.label, label, lvl)
                neighbor_node = self._nodes[neighbor.label]
                if len(neighbor_node.connections[lvl]) > 2 * self.m:
                    self._prune(neighbor_node, lvl, keep=label)
            if candidates:
                current = candidates[0].label

        if layer > self._max_layer:
            self._entry_point = label
            self._max_layer = layer

    def remove(self, label: str) -> None:
        """Delete *label* and every edge pointing to it.  No-op when absent."""
        node = self._nodes.pop(label, None)
        if node is None:
            return

        for source in self._inbound.pop(label, set()):
            source_node = self._nodes.get(source)
            if source_node is None:
                continue
            for conns in source_node.connections.values():
                conns.discard(label)

        for conns in node.connections.values():
            for target in conns:
                inbound = self._inbound.get(target)
                if inbound is not None:
                    inbound.discard(label)

        if self._entry_point == label:
            self._reselect_entry_point()

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def search(
        self,
        query: Sequence[float] | np.ndarray,
        k: int,
        ef: int | None = None,
    ) -> list[Neighbor]:
        """
        Return up to *k* nearest labels ordered by ascending cosine distance.

        *ef* is the layer-0 beam width; it defaults to ``max(50, k)`` and is
        never smaller than *k*.
        """
        q = self._as_vector(query)
        if k <= 0 or self._entry_point is None or not self._nodes:
            return []

        search_ef = max(ef if ef is not None else DEFAULT_EF_SEARCH, k)
        q_norm = float(np.linalg.norm(q))
        current = self._entry_point

        for lvl in range(self._max_layer, 0, -1):
            found = self._search_layer(q, q_norm, current, 1, lvl)
            if found:
                current = found[0].label

        return self._search_layer(q, q_norm, current, search_ef, 0)[:k]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def serialize(self) -> bytes:
        """Encode the whole graph in the binary snapshot format."""
        order = list(self._nodes)
        position = {label: i for i, label in enumerate(order)}
        entry_index = position[self._entry_point] if self._entry_point is not None else -1

        parts: list[bytes] = [
            _HEADER.pack(
                MAGIC_NUMBER,
                FORMAT_VERSION,
                self.dimensions,
                self.m,
                len(order),
                entry_index,
                self._max_layer,
            )
        ]

        for label in order:
            node = self._nodes[label]
            label_bytes = label.encode("utf-8")
            if len(label_bytes) > 0xFFFF:
                raise ValueError(f"Label too long to serialize: {len(label_bytes)} bytes")
            parts.append(_U16.pack(len(label_bytes)))
            parts.append(label_bytes)
            parts.append(node.vector.astype("<f4").tobytes())
            parts.append(_U32_PAIR.pack(node.layer, len(node.connections)))
            for lvl in sorted(node.connections):
                targets = [position[t] for t in node.connections[lvl] if t in position]
                parts.append(_U32_PAIR.pack(lvl, len(targets)))
                if targets:
                    parts.append(struct.pack(f"<{len(targets)}I", *targets))

        return b"".join(parts)

    @classmethod
    def deserialize(cls, data: bytes | bytearray | memoryview) -> HNSWIndex:
        """
        Rebuild an index from :meth:`serialize` output.

        Raises :class:`IndexFormatError` for an unknown magic number or
        version (checked before anything else is read) and for truncated or
        otherwise malformed buffers.
        """
        buf = memoryview(data)
        if len(buf) < 5:
            raise IndexFormatError("Invalid HNSW index file: buffer too short")

        (magic,) = _U32.unpack_from(buf, 0)
        if magic != MAGIC_NUMBER:
            raise IndexFormatError(f"Invalid HNSW index file: bad magic 0x{magic:08X}")
        version = buf[4]
        if version != FORMAT_VERSION:
            raise IndexFormatError(f"Unsupported HNSW format version: {version}")

        try:
            return cls._decode(buf)
        except (struct.error, UnicodeDecodeError, ValueError) as exc:
            raise IndexFormatError(f"Corrupt HNSW index file: {exc}") from exc

    @classmethod
    def _decode(cls, buf: memoryview) -> HNSWIndex:
        _, _, dimensions, m, node_count, entry_index, max_layer = _HEADER.unpack_from(buf, 0)
        offset = _HEADER.size
        index = cls(dimensions, m=m)
        vector_bytes = dimensions * 4

        labels: list[str] = []
        raw_nodes: list[tuple[str, np.ndarray, int, list[tuple[int, tuple[int, ...]]]]] = []

        for _ in range(node_count):
            (label_len,) = _U16.unpack_from(buf, offset)
            offset += _U16.size
            if offset + label_len > len(buf):
                raise ValueError("label runs past end of buffer")
            label = bytes(buf[offset:offset + label_len]).decode("utf-8")
            offset += label_len

            if offset + vector_bytes > len(buf):
                raise ValueError("vector runs past end of buffer")
            vector = np.frombuffer(buf[offset:offset + vector_bytes], dtype="<f4").astype(np.float32)
            offset += vector_bytes

            layer, layer_count = _U32_PAIR.unpack_from(buf, offset)
            offset += _U32_PAIR.size

            layers: list[tuple[int, tuple[int, ...]]] = []
            for _ in range(layer_count):
                lvl, count = _U32_PAIR.unpack_from(buf, offset)
                offset += _U32_PAIR.size
                targets = struct.unpack_from(f"<{count}I", buf, offset)
                offset += 4 * count
                layers.append((lvl, targets))

            labels.append(label)
            raw_nodes.append((label, vector, layer, layers))

        for label, vector, layer, layers in raw_nodes:
            connections = {
                lvl: {labels[t] for t in targets if t < len(labels)}
                for lvl, targets in layers
            }
            index._nodes[label] = _Node(
                label=label,
                vector=vector,
                norm=float(np.linalg.norm(vector)),
                layer=layer,
                connections=connections,
            )

        for label in index._nodes:
            index._inbound.setdefault(label, set())
        for label, node in index._nodes.items():
            for conns in node.connections.values():
                for target in conns:
                    index._inbound[target].add(label)

        if 0 <= entry_index < len(labels):
            index._entry_point = labels[entry_index]
            index._max_layer = max_layer
        elif index._nodes:
            index._reselect_entry_point()

        return index

    def save(self, path: str | Path) -> None:
        """Write a snapshot to *path* atomically (temp file + rename)."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(self.serialize())
        os.replace(tmp, target)
        logger.debug("Saved HNSW index (%d nodes) to %s", len(self), target)

    @classmethod
    def load(cls, path: str | Path) -> HNSWIndex:
        return cls.deserialize(Path(path).read_bytes())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _as_vector(self, vector: Sequence[float] | np.ndarray) -> np.ndarray:
        arr = np.array(vector, dtype=np.float32)
        if arr.ndim != 1 or arr.shape[0] != self.dimensions:
            raise DimensionMismatchError(self.dimensions, int(arr.size))
        return arr

    def _random_layer(self) -> int:
        # 1 - random() lies in (0, 1], so the log is always defined.
        return int(math.floor(-math.log(1.0 - self._rng.random()) * self.ml))

    def _distance(self, query: np.ndarray, query_norm: float, node: _Node) -> float:
        denom = query_norm * node.norm
        if denom == 0:
            return 1.0
        return 1.0 - float(np.dot(query, node.vector)) / denom

    def _search_layer(
        self,
        query: np.ndarray,
        query_norm: float,
        entry: str,
        ef: int,
        layer: int,
    ) -> list[Neighbor]:
        """Beam search of width *ef* on one layer, nearest first."""
        entry_node = self._nodes.get(entry)
        if entry_node is None:
            return []

        entry_dist = self._distance(query, query_norm, entry_node)
        visited = {entry}
        candidates: list[tuple[float, str]] = [(entry_dist, entry)]
        results: list[tuple[float, str]] = [(-entry_dist, entry)]  # max-heap

        while candidates:
            dist, label = heapq.heappop(candidates)
            if dist > -results[0][0]:
                break

            node = self._nodes.get(label)
            if node is None:
                continue

            for neighbor in node.connections.get(layer, ()):
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                neighbor_node = self._nodes.get(neighbor)
                if neighbor_node is None:
                    continue

                d = self._distance(query, query_norm, neighbor_node)
                if len(results) < ef or d < -results[0][0]:
                    heapq.heappush(candidates, (d, neighbor))
                    heapq.heappush(results, (-d, neighbor))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted((Neighbor(label, -neg) for neg, label in results), key=lambda n: n.distance)

    @staticmethod
    def _select_neighbors(candidates: list[Neighbor], m: int) -> list[Neighbor]:
        # Nearest-first truncation.
        return sorted(candidates, key=lambda n: n.distance)[:m]

    def _link(self, source: str, target: str, layer: int) -> None:
        self._nodes[source].connections.setdefault(layer, set()).add(target)
        self._inbound.setdefault(target, set()).add(source)

    def _prune(self, node: _Node, layer: int, keep: str) -> None:
        """Shrink *node*'s neighbour list on *layer* to its nearest ``2 * m``, keeping *keep*."""
        conns = node.connections[layer]
        scored = [
            Neighbor(other, self._distance(node.vector, node.norm, self._nodes[other]))
            for other in conns
            if other != keep and other in self._nodes
        ]
        kept = {n.label for n in self._select_neighbors(scored, 2 * self.m - 1)}
        kept.add(keep)

        for dropped in conns - kept:
            still_linked = any(
                dropped in other_conns
                for lvl, other_conns in node.connections.items()
                if lvl != layer
            )
            if not still_linked:
                inbound = self._inbound.get(dropped)
                if inbound is not None:
                    inbound.discard(node.label)

        node.connections[layer] = kept

    def _reselect_entry_point(self) -> None:
        if not self._nodes:
            self._entry_point = None
            self._max_layer = 0
            return
        best = max(self._nodes.values(), key=lambda n: n.layer)
        self._entry_point = best.label
        self._max_layer = best.layer
