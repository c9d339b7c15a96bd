"""Bridge synthesis and loop assembly."""

from .assembler import LoopAssembler, compute_repeat_count
from .bridge import BridgeSynthesizer

__all__ = ["LoopAssembler", "compute_repeat_count", "BridgeSynthesizer"]
