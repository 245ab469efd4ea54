"""Cryptographic primitives: leaf encoding, Merkle trees, proofs."""

from merkledrop.crypto.merkle import (
    AllocationTree,
    MerkleTree,
    TreeLeaf,
    build_tree,
    get_proof,
    leaf_hash,
    rebuild_tree,
    verify_proof,
)

__all__ = [
    "AllocationTree",
    "MerkleTree",
    "TreeLeaf",
    "build_tree",
    "get_proof",
    "leaf_hash",
    "rebuild_tree",
    "verify_proof",
]
