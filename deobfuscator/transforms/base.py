from abc import ABC, abstractmethod

from deobfuscator.core.block_graph import BlockGraph


class TransformPass(ABC):
    """A rewrite applied to a whole block graph by the TransformPipeline."""

    name = "pass"

    def initialize(self, graph: BlockGraph) -> None:
        """Reset per-method state before the first iteration."""

    @abstractmethod
    def apply(self, graph: BlockGraph) -> bool:
        """Apply the rewrite. Returns True if anything changed."""
