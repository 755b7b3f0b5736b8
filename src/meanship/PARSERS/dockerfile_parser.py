"""
Parsers for Dockerfiles, extracting instructions, flags and build stages.
"""
import json
import re
from typing import List
from ..MODELS.dockerfile_ast import Instruction, BuildStage
from ..errors import BuildError

FLAG_PATTERN = re.compile(r'^--([a-z][a-z-]*)=(\S+)\s*')


class DockerfileParser:
    """
    Parser for Dockerfile instructions.
    """
    def parse(self, dockerfile_path: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a file path.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        with open(dockerfile_path, 'r', encoding='utf-8') as f:
            content = f.read()
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> List[Instruction]:
        """
        Parses a Dockerfile from a string content.

        Args:
            content (str): Content of the Dockerfile.

        Returns:
            List[Instruction]: List of parsed instructions.
        """
        instructions = []

        # 1. Remove comments
        content = re.sub(r'^\s*#.*$', '', content, flags=re.MULTILINE)

        # 2. Handle line continuations with \
        content = re.sub(r'\\\s*\n', ' ', content)

        # 3. Instructions start a line, keywords are case-insensitive
        pattern = re.compile(r'^\s*([A-Za-z]+)\s+(.*)$', re.MULTILINE)

        for match in pattern.finditer(content):
            inst = match.group(1).upper()
            args_str = match.group(2).strip()

            # 4. Leading --flag=value options (COPY --from=build, FROM --platform=...)
            flags = {}
            flag_match = FLAG_PATTERN.match(args_str)
            while flag_match:
                flags[flag_match.group(1)] = flag_match.group(2)
                args_str = args_str[flag_match.end():]
                flag_match = FLAG_PATTERN.match(args_str)

            # 5. Handle JSON/Exec form vs Shell form
            if args_str.startswith('[') and args_str.endswith(']'):
                try:
                    args = json.loads(args_str)
                except json.JSONDecodeError:
                    args = [args_str]
                if not isinstance(args, list):
                    args = [args_str]
                args = [str(a) for a in args]
            elif inst == "ENV":
                if '=' in args_str:
                    args = re.findall(r'(\S+=\S+)', args_str)
                else:
                    args = args_str.split(None, 1)
            elif inst in ("FROM", "COPY", "ADD"):
                args = args_str.split()
            else:
                args = [args_str]

            instructions.append(Instruction(
                instruction=inst,
                arguments=args,
                raw=match.group(0).strip(),
                flags=flags,
            ))

        return instructions

    def parse_stages(self, dockerfile_path: str) -> List[BuildStage]:
        """
        Parses a Dockerfile and groups its instructions into build stages.

        Args:
            dockerfile_path (str): Path to the Dockerfile.

        Returns:
            List[BuildStage]: One entry per FROM, in file order.
        """
        with open(dockerfile_path, 'r', encoding='utf-8') as f:
            content = f.read()
        return self.stages_from_string(content)

    def stages_from_string(self, content: str) -> List[BuildStage]:
        stages: List[BuildStage] = []
        for inst in self.parse_from_string(content):
            if inst.instruction == "FROM":
                if not inst.arguments:
                    raise BuildError("FROM instruction without a base image")
                name = None
                if len(inst.arguments) >= 3 and inst.arguments[1].upper() == "AS":
                    name = inst.arguments[2].lower()
                stages.append(BuildStage(index=len(stages), base=inst.arguments[0], name=name))
            elif not stages:
                # Only global ARGs may precede the first FROM
                if inst.instruction != "ARG":
                    raise BuildError(f"{inst.instruction} appears before the first FROM")
            else:
                stages[-1].instructions.append(inst)
        return stages

    def validate_stages(self, stages: List[BuildStage]) -> None:
        """
        Ensures every stage reference resolves to an earlier stage.

        Raises:
            BuildError: when there is no stage, a stage name is duplicated,
                or a ``FROM`` or ``COPY --from`` names a stage that is not
                declared before it.
        """
        if not stages:
            raise BuildError("Dockerfile declares no build stage")

        names = {}
        for stage in stages:
            if stage.name:
                if stage.name in names:
                    raise BuildError(f"Duplicate build stage name '{stage.name}'")
                names[stage.name] = stage.index

        for stage in stages:
            base = stage.base.lower()
            if base in names and names[base] >= stage.index:
                raise BuildError(
                    f"Stage {stage.index} builds FROM '{stage.base}', which is not declared before it"
                )
            for ref in stage.copy_sources():
                self._check_reference(stage, ref, names)

    def _check_reference(self, stage: BuildStage, ref: str, names: dict) -> None:
        if ref.isdigit():
            if int(ref) >= stage.index:
                raise BuildError(
                    f"Stage {stage.index} copies from stage {ref}, which is not built before it"
                )
            return
        key = ref.lower()
        if key in names:
            if names[key] >= stage.index:
                raise BuildError(
                    f"Stage {stage.index} copies from '{ref}', which is not built before it"
                )
            return
        # A name with registry/tag syntax is an external image, anything
        # else is a stage that was never declared.
        if not any(c in ref for c in ':/.@'):
            raise BuildError(f"COPY --from={ref} does not match any build stage")
