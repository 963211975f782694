"""Parse and resolve node filters.

A node filter selects a subset of a cluster's nodes for a scoped value such as
an environment variable, a label or a port mapping. The grammar is::

    filter  := role | role "[" index "]"
    role    := "server" | "agent" | "loadbalancer" | "all"
    index   := "*" | number | number ("," number)+ | [number] ":" [number]

``loadbalancer`` names a single implicit node and ``all`` every node, so
neither takes an index. A range ``a:b`` is half-open. A bare role or ``*``
selects every node of that role present in the topology at resolution time.

A value without any filter applies to every **server** node. That default
changes cluster topology silently when forgotten, so keep it in mind when
scoping ports or volumes to agents.

Examples
--------
>>> topology = build_topology(servers=1, agents=2, cluster="dev")
>>> sorted(ref.name for ref in resolve_node_filters(["agent[*]"], topology))
['k3d-dev-agent-0', 'k3d-dev-agent-1']
>>> [ref.name for ref in resolve_node_filters([], topology)]
['k3d-dev-server-0']
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from k3d_reconciler._cluster_models import (
    ROLE_AGENT,
    ROLE_LOADBALANCER,
    ROLE_SERVER,
    NodeRef,
)
from k3d_reconciler._reconciler_errors import (
    FilterTargetMissing,
    InvalidFilterSyntax,
    UnknownRole,
)

ROLE_ALL = "all"
FILTER_ROLES = (ROLE_SERVER, ROLE_AGENT, ROLE_LOADBALANCER, ROLE_ALL)

_FILTER_PATTERN = re.compile(r"^(?P<role>[^\[\]]+)(?:\[(?P<index>[^\[\]]*)\])?$")
_LIST_PATTERN = re.compile(r"^\d+(?:,\d+)*$")
_RANGE_PATTERN = re.compile(r"^(?P<start>\d*):(?P<stop>\d*)$")


@dataclass(frozen=True, slots=True)
class NodeFilter:
    """A parsed node filter.

    Attributes
    ----------
    role
        One of ``server``, ``agent``, ``loadbalancer`` or ``all``.
    indices
        Explicit node indices, or ``None`` when not selecting by index.
    span
        Half-open ``(start, stop)`` range with optional bounds, or ``None``.
    """

    role: str
    indices: tuple[int, ...] | None = None
    span: tuple[int | None, int | None] | None = None

    @property
    def selects_whole_role(self) -> bool:
        return self.indices is None and self.span is None

    def __str__(self) -> str:
        if self.indices is not None:
            return f"{self.role}[{','.join(str(i) for i in self.indices)}]"
        if self.span is not None:
            start, stop = self.span
            return f"{self.role}[{'' if start is None else start}:{'' if stop is None else stop}]"
        if self.role in (ROLE_LOADBALANCER, ROLE_ALL):
            return self.role
        return f"{self.role}[*]"


def node_name(cluster: str, role: str, index: int) -> str:
    """Return the runtime name of a cluster node.

    Examples
    --------
    >>> node_name("dev", "server", 0)
    'k3d-dev-server-0'
    >>> node_name("dev", "loadbalancer", 0)
    'k3d-dev-serverlb'
    """
    if role == ROLE_LOADBALANCER:
        return f"k3d-{cluster}-serverlb"
    return f"k3d-{cluster}-{role}-{index}"


def build_topology(
    servers: int,
    agents: int,
    cluster: str,
    *,
    load_balancer: bool = True,
) -> tuple[NodeRef, ...]:
    """Return the node positions of a cluster with the given shape."""
    refs = [
        NodeRef(ROLE_SERVER, index, node_name(cluster, ROLE_SERVER, index))
        for index in range(servers)
    ]
    refs.extend(
        NodeRef(ROLE_AGENT, index, node_name(cluster, ROLE_AGENT, index))
        for index in range(agents)
    )
    if load_balancer:
        refs.append(
            NodeRef(ROLE_LOADBALANCER, 0, node_name(cluster, ROLE_LOADBALANCER, 0))
        )
    return tuple(refs)


def _parse_index(text: str, raw: str) -> tuple[tuple[int, ...] | None, tuple[int | None, int | None] | None]:
    if text == "*":
        return None, None
    if _LIST_PATTERN.match(text):
        return tuple(int(part) for part in text.split(",")), None
    span = _RANGE_PATTERN.match(text)
    if span:
        start = int(span["start"]) if span["start"] else None
        stop = int(span["stop"]) if span["stop"] else None
        if start is not None and stop is not None and stop < start:
            msg = f"invalid node filter {raw!r}: range end precedes its start"
            raise InvalidFilterSyntax(msg)
        return None, (start, stop)
    msg = (
        f"invalid node filter {raw!r}: index must be a non-negative integer, "
        "a comma-separated list, a range 'a:b' or '*'"
    )
    raise InvalidFilterSyntax(msg)


def parse_node_filter(raw: str) -> NodeFilter:
    """Parse a single filter string.

    Raises
    ------
    InvalidFilterSyntax
        If ``raw`` does not match the filter grammar.
    UnknownRole
        If the role token is not a known role.

    Examples
    --------
    >>> parse_node_filter("server[0]")
    NodeFilter(role='server', indices=(0,), span=None)
    >>> parse_node_filter("agent[1:]").span
    (1, None)
    """
    text = raw.strip()
    match = _FILTER_PATTERN.match(text)
    if not match:
        msg = f"invalid node filter {raw!r}: expected '<role>' or '<role>[<index>]'"
        raise InvalidFilterSyntax(msg)

    role = match["role"]
    if role not in FILTER_ROLES:
        msg = f"unknown role {role!r} in node filter {raw!r}; expected one of {', '.join(FILTER_ROLES)}"
        raise UnknownRole(msg)

    index = match["index"]
    if index is None:
        return NodeFilter(role=role)
    if role in (ROLE_LOADBALANCER, ROLE_ALL):
        msg = f"invalid node filter {raw!r}: role {role!r} does not take an index"
        raise InvalidFilterSyntax(msg)

    indices, span = _parse_index(index, raw)
    return NodeFilter(role=role, indices=indices, span=span)


def _select(node_filter: NodeFilter, topology: Sequence[NodeRef]) -> list[NodeRef]:
    if node_filter.role == ROLE_ALL:
        return list(topology)

    candidates = sorted(
        (ref for ref in topology if ref.role == node_filter.role),
        key=lambda ref: ref.index,
    )
    if node_filter.role == ROLE_LOADBALANCER:
        if not candidates:
            msg = "node filter 'loadbalancer' targets a cluster without a load balancer"
            raise FilterTargetMissing(msg)
        return candidates

    if node_filter.selects_whole_role:
        return candidates

    by_index = {ref.index: ref for ref in candidates}
    if node_filter.indices is not None:
        missing = [index for index in node_filter.indices if index not in by_index]
        if missing:
            msg = (
                f"node filter '{node_filter}' selects {node_filter.role} index "
                f"{missing[0]} but the cluster has {len(candidates)} {node_filter.role} node(s)"
            )
            raise FilterTargetMissing(msg)
        return [by_index[index] for index in node_filter.indices]

    start, stop = node_filter.span or (None, None)
    lower = 0 if start is None else start
    upper = len(candidates) if stop is None else stop
    selected = [ref for ref in candidates if lower <= ref.index < upper]
    if not selected:
        msg = f"node filter '{node_filter}' selects no {node_filter.role} nodes"
        raise FilterTargetMissing(msg)
    return selected


def resolve_node_filters(
    filters: Iterable[str],
    topology: Sequence[NodeRef],
) -> frozenset[NodeRef]:
    """Resolve ``filters`` to the nodes they select in ``topology``.

    An empty ``filters`` selects every server node. The result is the union
    of what each filter selects and depends only on its arguments.

    Raises
    ------
    InvalidFilterSyntax, UnknownRole
        If a filter cannot be parsed.
    FilterTargetMissing
        If a filter names a node the topology does not contain.
    """
    parsed = [parse_node_filter(raw) for raw in filters]
    if not parsed:
        parsed = [NodeFilter(role=ROLE_SERVER)]

    selected: set[NodeRef] = set()
    for node_filter in parsed:
        selected.update(_select(node_filter, topology))
    return frozenset(selected)


def format_runtime_filter(ref: NodeRef) -> str:
    """Render ``ref`` in the ``role:index`` form the k3d config file accepts.

    Examples
    --------
    >>> format_runtime_filter(NodeRef("agent", 1, "k3d-dev-agent-1"))
    'agent:1'
    >>> format_runtime_filter(NodeRef("loadbalancer", 0, "k3d-dev-serverlb"))
    'loadbalancer'
    """
    if ref.role == ROLE_LOADBALANCER:
        return ROLE_LOADBALANCER
    return f"{ref.role}:{ref.index}"


__all__ = [
    "FILTER_ROLES",
    "ROLE_ALL",
    "NodeFilter",
    "build_topology",
    "format_runtime_filter",
    "node_name",
    "parse_node_filter",
    "resolve_node_filters",
]
