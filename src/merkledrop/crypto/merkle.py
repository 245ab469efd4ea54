"""Merkle tree implementation compatible with on-chain ``MerkleProof.verify``.

Leaf encoding (fixed cross-system contract):
    leaf = keccak256(abi.encodePacked(address, uint256 amount))
i.e. the 20 raw address bytes followed by the amount as 32 big-endian
bytes. Any other layout yields proofs that pass here and fail on-chain.

Internal nodes hash sorted pairs: keccak256(min(a, b) ‖ max(a, b)). Proofs
are therefore plain ordered sibling lists with no left/right markers.

An unpaired node at the end of a level is promoted unchanged. It is never
duplicated, since a duplicated last node would let someone prove
membership of a leaf that does not exist.

Leaves are NOT sorted here. Callers pass them in canonical order
(address-sorted, see AllocationValidator) and rebuilding from persisted
leaves must use the same order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from web3 import Web3

from merkledrop.allocation.validator import CanonicalAllocations
from merkledrop.errors import LeafNotFound


def leaf_hash(address: str, amount: int) -> str:
    """Compute keccak256(abi.encodePacked(address, uint256)) as 0x-hex."""
    digest = Web3.solidity_keccak(
        ["address", "uint256"],
        [Web3.to_checksum_address(address), int(amount)],
    )
    return Web3.to_hex(digest)


def hash_pair(left: bytes, right: bytes) -> bytes:
    """Hash two nodes in canonical (sorted) order."""
    if right < left:
        left, right = right, left
    return bytes(Web3.keccak(left + right))


def _to_bytes(node: "str | bytes") -> bytes:
    if isinstance(node, (bytes, bytearray)):
        return bytes(node)
    return bytes(Web3.to_bytes(hexstr=node))


class MerkleTree:
    """A Merkle tree over pre-hashed leaves, in the order given.

    Usage:
        tree = MerkleTree(["0xabc...", "0xdef..."])
        root = tree.root
        proof = tree.proof_at(0)
    """

    def __init__(self, leaf_hashes: Sequence["str | bytes"]) -> None:
        if not leaf_hashes:
            raise ValueError("Cannot build a Merkle tree without leaves")
        leaves = [_to_bytes(h) for h in leaf_hashes]
        for h in leaves:
            if len(h) != 32:
                raise ValueError(f"Leaf hash must be 32 bytes, got {len(h)}")

        self._levels: list[list[bytes]] = [leaves]
        current = leaves
        while len(current) > 1:
            next_level: list[bytes] = []
            for i in range(0, len(current), 2):
                if i + 1 < len(current):
                    next_level.append(hash_pair(current[i], current[i + 1]))
                else:
                    next_level.append(current[i])  # promoted unchanged
            self._levels.append(next_level)
            current = next_level

        self._positions = {h: i for i, h in reversed(list(enumerate(leaves)))}

    @property
    def root(self) -> str:
        return Web3.to_hex(self._levels[-1][0])

    @property
    def leaf_count(self) -> int:
        return len(self._levels[0])

    @property
    def depth(self) -> int:
        """Number of hashing levels above the leaves."""
        return len(self._levels) - 1

    def proof_at(self, index: int) -> list[str]:
        """Sibling hashes from leaf ``index`` up to (excluding) the root."""
        if index < 0 or index >= self.leaf_count:
            raise IndexError(f"Leaf index {index} out of range")
        proof: list[str] = []
        position = index
        for level in self._levels[:-1]:
            sibling = position ^ 1
            if sibling < len(level):
                proof.append(Web3.to_hex(level[sibling]))
            position //= 2
        return proof

    def proof_for(self, leaf: "str | bytes") -> Optional[list[str]]:
        """Proof for a leaf hash, or None if the leaf is not in the tree."""
        position = self._positions.get(_to_bytes(leaf))
        if position is None:
            return None
        return self.proof_at(position)


@dataclass(frozen=True)
class TreeLeaf:
    """A recipient leaf with its position in the tree."""
    address: str
    amount: int
    leaf_hash: str
    leaf_index: int


@dataclass(frozen=True)
class AllocationTree:
    """Result of building a tree from an allocation set."""
    root: str
    leaves: tuple[TreeLeaf, ...]
    total: int
    tree: MerkleTree = field(repr=False, compare=False)
    index: dict[str, TreeLeaf] = field(repr=False, compare=False, default_factory=dict)

    def leaf_for(self, address: str) -> Optional[TreeLeaf]:
        return self.index.get(address.strip().lower())


def build_tree(allocations: CanonicalAllocations) -> AllocationTree:
    """Build the distribution tree from canonical allocations."""
    leaves = tuple(
        TreeLeaf(
            address=entry.address,
            amount=entry.amount,
            leaf_hash=leaf_hash(entry.address, entry.amount),
            leaf_index=i,
        )
        for i, entry in enumerate(allocations.entries)
    )
    return _assemble(leaves)


def rebuild_tree(leaves: Iterable[TreeLeaf]) -> AllocationTree:
    """Rebuild a tree from stored leaves, which must be ordered by leaf_index."""
    ordered = tuple(leaves)
    for expected, leaf in enumerate(ordered):
        if leaf.leaf_index != expected:
            raise ValueError(
                f"Leaves must be contiguous and ordered by leaf_index; "
                f"expected {expected}, got {leaf.leaf_index}"
            )
    return _assemble(ordered)


def get_proof(tree: AllocationTree, address: str) -> list[str]:
    """Return the sibling hash list for ``address``. Raises LeafNotFound."""
    leaf = tree.leaf_for(address)
    if leaf is None:
        raise LeafNotFound(address)
    return tree.tree.proof_at(leaf.leaf_index)


def verify_proof(
    proof: Sequence["str | bytes"],
    root: "str | bytes",
    address: str,
    amount: int,
) -> bool:
    """Off-chain dry run of the on-chain verifier.

    Recomputes the leaf and folds the proof with sorted-pair hashing.
    Malformed input verifies as False rather than raising.
    """
    try:
        node = _to_bytes(leaf_hash(address, amount))
        for sibling in proof:
            node = hash_pair(node, _to_bytes(sibling))
        return node == _to_bytes(root)
    except (ValueError, TypeError):
        return False


def tree_stats(tree: AllocationTree) -> dict[str, object]:
    """Summary figures for operators and dashboards."""
    amounts = [leaf.amount for leaf in tree.leaves]
    return {
        "recipient_count": len(amounts),
        "total_allocated": tree.total,
        "merkle_root": tree.root,
        "tree_depth": tree.tree.depth,
        "average_allocation": tree.total // len(amounts),
        "min_allocation": min(amounts),
        "max_allocation": max(amounts),
    }


def _assemble(leaves: tuple[TreeLeaf, ...]) -> AllocationTree:
    tree = MerkleTree([leaf.leaf_hash for leaf in leaves])
    return AllocationTree(
        root=tree.root,
        leaves=leaves,
        total=sum(leaf.amount for leaf in leaves),
        tree=tree,
        index={leaf.address: leaf for leaf in leaves},
    )
