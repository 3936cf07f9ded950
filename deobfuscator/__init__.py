"""
Control-flow deobfuscator for CIL-style stack bytecode.
"""

# Entry points
from .simple_deobfuscator import (
    CleanupResult,
    SimpleDeobfuscatorFlags,
    deobfuscate,
    deobfuscate_blocks,
)
from .config import DeobfuscatorConfig, load_config

# Method model
from .core.deobfuscation_state import DeobfuscationState, MethodFlags
from .core.instruction import Instruction
from .core.method import ExceptionHandler, HandlerType, MethodBody, MethodDef, MethodRef
from .core.opcodes import Opcode

# Graph and passes
from .core.block_graph import BlockGraph
from .analysis.block_builder import build_block_graph, build_method_graph
from .transforms.base import TransformPass
from .transforms.pipeline import TransformPipeline

# Listings
from .listing import dump_module, load_module

from .exceptions import (
    BlockGraphError,
    DeobfuscationError,
    InvalidMethodBodyError,
    ListingError,
)


__all__ = [
    # Entry points
    "CleanupResult",
    "SimpleDeobfuscatorFlags",
    "deobfuscate",
    "deobfuscate_blocks",
    "DeobfuscatorConfig",
    "load_config",
    # Method model
    "DeobfuscationState",
    "MethodFlags",
    "Instruction",
    "ExceptionHandler",
    "HandlerType",
    "MethodBody",
    "MethodDef",
    "MethodRef",
    "Opcode",
    # Graph and passes
    "BlockGraph",
    "build_block_graph",
    "build_method_graph",
    "TransformPass",
    "TransformPipeline",
    # Listings
    "dump_module",
    "load_module",
    # Errors
    "BlockGraphError",
    "DeobfuscationError",
    "InvalidMethodBodyError",
    "ListingError",
]
