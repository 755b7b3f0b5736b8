"""
Models for the Dockerfile Abstract Syntax Tree.
"""
from typing import List, Optional
from pydantic import BaseModel


class Instruction(BaseModel):
    """
    Represents a single instruction in a Dockerfile.
    """
    instruction: str
    arguments: List[str]
    raw: str
    flags: dict = {}


class BuildStage(BaseModel):
    """
    One ``FROM`` block of a (possibly multi-stage) Dockerfile.
    """
    index: int
    base: str
    name: Optional[str] = None
    instructions: List[Instruction] = []

    def copy_sources(self) -> List[str]:
        """Stage references used by ``COPY --from=...`` in this stage."""
        return [
            inst.flags["from"]
            for inst in self.instructions
            if inst.instruction == "COPY" and "from" in inst.flags
        ]
