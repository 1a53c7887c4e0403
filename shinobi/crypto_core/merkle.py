"""
Lean incremental Merkle tree (zk-kit LeanIMT layout) over Poseidon(2).

A node without a right sibling is carried up unchanged, so depth is
ceil(log2(size)) and proofs only list the siblings that actually exist.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from shinobi.crypto_core.poseidon import poseidon2
from shinobi.errors import CircuitConfigurationError

MAX_TREE_DEPTH = 32

HashFn = Callable[[int, int], int]


@dataclass(frozen=True)
class MerkleProof:
    root: int
    leaf: int
    siblings: List[int]
    # None when the path is empty (single-leaf tree)
    index: Optional[int]

    @property
    def leaf_index(self) -> int:
        return 0 if self.index is None else self.index


class LeanMerkleTree:
    def __init__(self, leaves: Iterable[int] = (), hash_fn: HashFn = poseidon2):
        self._hash = hash_fn
        self._nodes: List[List[int]] = [[]]
        leaves = list(leaves)
        if leaves:
            self.insert_many(leaves)

    # ---------- shape ----------
    @property
    def size(self) -> int:
        return len(self._nodes[0])

    @property
    def depth(self) -> int:
        return len(self._nodes) - 1

    @property
    def root(self) -> int:
        if not self.size:
            return 0
        return self._nodes[self.depth][0]

    @property
    def leaves(self) -> List[int]:
        return list(self._nodes[0])

    def index_of(self, leaf: int) -> int:
        """Position of leaf, or -1 when absent."""
        try:
            return self._nodes[0].index(leaf)
        except ValueError:
            return -1

    # ---------- building ----------
    def insert_many(self, leaves: Sequence[int]) -> None:
        """Append leaves and rebuild levels bottom-up."""
        self._nodes[0].extend(int(x) for x in leaves)
        level = self._nodes[0]
        nodes = [level]
        while len(level) > 1:
            parent = []
            for i in range(0, len(level), 2):
                if i + 1 < len(level):
                    parent.append(self._hash(level[i], level[i + 1]))
                else:
                    parent.append(level[i])
            nodes.append(parent)
            level = parent
        self._nodes = nodes

    def insert(self, leaf: int) -> None:
        self.insert_many([leaf])

    # ---------- proofs ----------
    def generate_proof(self, index: int) -> MerkleProof:
        if index < 0 or index >= self.size:
            raise IndexError(f"leaf index {index} out of range (size {self.size})")
        leaf = self._nodes[0][index]
        siblings: List[int] = []
        path: List[int] = []
        for level in range(self.depth):
            is_right = index & 1
            sibling_index = index - 1 if is_right else index + 1
            if sibling_index < len(self._nodes[level]):
                path.append(is_right)
                siblings.append(self._nodes[level][sibling_index])
            index >>= 1
        packed = None
        if path:
            packed = 0
            for bit in reversed(path):
                packed = (packed << 1) | bit
        return MerkleProof(root=self.root, leaf=leaf, siblings=siblings, index=packed)


def verify_proof(proof: MerkleProof, hash_fn: HashFn = poseidon2) -> bool:
    node = proof.leaf
    index = proof.leaf_index
    for i, sibling in enumerate(proof.siblings):
        if (index >> i) & 1:
            node = hash_fn(sibling, node)
        else:
            node = hash_fn(node, sibling)
    return node == proof.root


def pad_siblings(siblings: Sequence[int], depth: int = MAX_TREE_DEPTH) -> List[int]:
    """Right-pad with zeros to the circuit's fixed sibling count."""
    if len(siblings) > depth:
        raise CircuitConfigurationError(
            f"{len(siblings)} siblings exceed the circuit's maximum tree depth {depth}"
        )
    return list(siblings) + [0] * (depth - len(siblings))
