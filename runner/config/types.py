from dataclasses import dataclass, field
from pathlib import Path

MODES = ("tasks", "builds")


@dataclass(frozen=True)
class UnitSpec:
    name: str
    command: str | tuple[str, ...]
    working_dir: Path | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def uses_shell(self) -> bool:
        return isinstance(self.command, str)

    def display_command(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)


@dataclass
class ProjectConfig:
    root: Path
    tasks: list[UnitSpec] = field(default_factory=list)
    builds: list[UnitSpec] = field(default_factory=list)

    def __len__(self):
        return len(self.tasks) + len(self.builds)

    def units(self, mode: str) -> list[UnitSpec]:
        match mode:
            case "tasks":
                return list(self.tasks)
            case "builds":
                return list(self.builds)
            case _:
                raise KeyError(mode)


class ConfigError(Exception):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)


class UnsupportedConfigFormatError(ConfigError):
    def __init__(self, *args: object) -> None:
        super().__init__(*args)
