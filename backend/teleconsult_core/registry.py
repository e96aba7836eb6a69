from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote


@dataclass(frozen=True)
class CommandDefinition:
    name: str
    method: str
    path: str
    requires_credential: bool = False

    def path_for(self, consultation_id: str) -> str:
        return self.path.format(consultation_id=quote(consultation_id, safe=""))


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: dict[str, CommandDefinition] = {}
        self._aliases: dict[str, str] = {}

    def register(self, command: CommandDefinition) -> None:
        self._commands[command.name] = command

    def add_alias(self, alias: str, target: str) -> None:
        self._aliases[alias] = target

    def resolve(self, name: str) -> CommandDefinition:
        canonical = self._aliases.get(name, name)
        command = self._commands.get(canonical)
        if not command:
            raise KeyError(f"Command not found: {name}")
        return command

    def list_names(self) -> list[str]:
        return sorted(self._commands.keys())


def default_registry() -> CommandRegistry:
    registry = CommandRegistry()
    registry.register(
        CommandDefinition("modify_diagnosis", "PUT", "/consultations/{consultation_id}/prescription/diagnosis/modify")
    )
    registry.register(CommandDefinition("save_draft", "PUT", "/consultations/{consultation_id}/prescription/draft"))
    registry.register(
        CommandDefinition("generate_preview", "POST", "/consultations/{consultation_id}/prescription/generate-preview")
    )
    registry.register(
        CommandDefinition(
            "sign_and_send",
            "POST",
            "/consultations/{consultation_id}/prescription/sign-and-send",
            requires_credential=True,
        )
    )
    registry.register(
        CommandDefinition(
            "complete_consultation",
            "POST",
            "/consultations/{consultation_id}/prescription/complete-consultation",
        )
    )
    registry.add_alias("initialize_diagnosis", "modify_diagnosis")
    return registry
