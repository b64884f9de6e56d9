"""In-memory store of parsed programs keyed by generated ids."""

import logging
import uuid
from collections.abc import Mapping
from typing import Dict, Iterator, List, Optional, Sequence

from gcode_parser import Program
from mixer_exceptions import ProgramInUseError
from timeline import Segment, can_remove_program, total_layers

logger = logging.getLogger(__name__)


class ProgramStore(Mapping):
    """Holds every uploaded program for one session.

    Programs are added only once fully parsed and can be removed only while
    no timeline segment references them.
    """

    def __init__(self):
        self._programs: Dict[str, Program] = {}

    def __getitem__(self, program_id: str) -> Program:
        return self._programs[program_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._programs)

    def __len__(self) -> int:
        return len(self._programs)

    def add(self, program: Program, program_id: Optional[str] = None) -> str:
        """Store a program and return its id."""
        program_id = program_id or uuid.uuid4().hex
        self._programs[program_id] = program
        logger.debug("Stored %s as %s", program.name, program_id)
        return program_id

    def remove(self, program_id: str, timeline: Sequence[Segment]) -> Program:
        """Remove a program that the timeline no longer uses.

        Raises:
            KeyError: If the id is unknown
            ProgramInUseError: If a segment still references the program
        """
        program = self._programs[program_id]
        if not can_remove_program(program_id, timeline):
            raise ProgramInUseError(program_id, program.name)
        del self._programs[program_id]
        logger.debug("Removed %s (%s)", program.name, program_id)
        return program

    def names(self) -> List[str]:
        return [program.name for program in self._programs.values()]

    def total_layers(self) -> int:
        """Layer span of the timeline for the stored programs."""
        return total_layers(self._programs.values())
