# querygate/core/semantic/topology.py
"""
SEMANTIC TOPOLOGY - Turn free text into a small weighted tree and fingerprint it

Data Flow:
    input text → tokenize() → weight each token (sha256) → link into tree
                                                              ↓
                                      generate_topology_fingerprint() → 8 bytes

The fingerprint is the lookup key for the template registry. Identical text
always gives an identical tree, so it always gives an identical fingerprint;
changing a token, a direction or the shape of the tree changes it.

Trees can be as deep as the token count (~5000 tokens for a 10 KiB input),
so both traversals walk an explicit stack instead of recursing.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from querygate.core.guard.permission import is_separator

LEFT, PRIMARY, RIGHT = 0, 1, 2
FINGERPRINT_SIZE = 8


@dataclass(eq=False)
class TopologyNode:
    token: str = ""
    weight: float = 1.0
    direction: int = 0
    links: List[Optional["TopologyNode"]] = field(
        default_factory=lambda: [None, None, None]
    )

    @property
    def left(self) -> Optional["TopologyNode"]:
        return self.links[LEFT]

    @property
    def primary(self) -> Optional["TopologyNode"]:
        return self.links[PRIMARY]

    @property
    def right(self) -> Optional["TopologyNode"]:
        return self.links[RIGHT]

    def children(self) -> Iterator["TopologyNode"]:
        return (link for link in self.links if link is not None)


def tokenize(input_text: str) -> List[str]:
    """Split on whitespace and punctuation; symbols like $ or > stay in tokens."""
    tokens = []
    current: List[str] = []
    for char in input_text:
        if is_separator(char):
            if current:
                tokens.append("".join(current))
                current = []
        else:
            current.append(char)
    if current:
        tokens.append("".join(current))
    return tokens


def token_weight(token: str) -> float:
    """First 4 digest bytes as a little-endian uint32, scaled into [0, 1)."""
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "little") / 2**32


class SemanticTopology:
    def build_topology(self, input_text: str) -> Optional[TopologyNode]:
        """
        Link the tokens of `input_text` into a tree.

        Rules, applied token by token against a running "current" node:
            - first token hangs off the root placeholder (direction 0)
            - heavier than current: take current's slot in its parent and
              keep current as our left child (direction +1)
            - otherwise: hang below current on its primary link (direction -1)

        Returns the first real node, or the root placeholder when the input
        has no tokens at all.
        """
        root = TopologyNode(weight=1.0)
        parent = root
        current = root

        for token in tokenize(input_text):
            node = TopologyNode(token=token, weight=token_weight(token))

            if current is root:
                root.links[PRIMARY] = node
                node.direction = 0
                parent = root
            elif node.weight > current.weight:
                node.links[LEFT] = current
                parent.links[PRIMARY] = node
                node.direction = 1
            else:
                current.links[PRIMARY] = node
                node.direction = -1
                parent = current

            current = node

        if root.primary is not None:
            return root.primary
        return root

    def calculate_topology_balance(self, node: Optional[TopologyNode]) -> float:
        """Diagnostic only: (balance(left) + balance(primary) + signed weight) / 3."""
        if node is None:
            return 0.0

        balances: Dict[int, float] = {}
        for current in _post_order(node):
            left = balances.pop(id(current.left), 0.0) if current.left else 0.0
            primary = balances.pop(id(current.primary), 0.0) if current.primary else 0.0
            balances[id(current)] = (left + primary + current.direction * current.weight) / 3
        return balances[id(node)]

    def generate_topology_fingerprint(self, node: Optional[TopologyNode]) -> bytes:
        if node is None:
            return b"\x00"

        fingerprints: Dict[int, bytes] = {}
        for current in _post_order(node):
            buf = bytearray(current.token.encode("utf-8"))
            buf.append(current.direction + 1)
            buf.append(0)
            for child in current.children():
                buf += fingerprints.pop(id(child))
            fingerprints[id(current)] = hashlib.sha256(buf).digest()[:FINGERPRINT_SIZE]
        return fingerprints[id(node)]


def _post_order(node: TopologyNode) -> Iterator[TopologyNode]:
    """Children (left, primary, right) before their parent, without recursion."""
    stack: List[Tuple[TopologyNode, bool]] = [(node, False)]
    while stack:
        current, expanded = stack.pop()
        if expanded:
            yield current
            continue
        stack.append((current, True))
        for child in reversed(current.links):
            if child is not None:
                stack.append((child, False))
