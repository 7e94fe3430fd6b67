"""Domain models for secret management."""
from dataclasses import dataclass

# Value stored in secrets created before the operator fills them in.
# The boot program never exports secrets holding one of these values.
PLACEHOLDER_VALUE = "UNSET"
PLACEHOLDER_VALUES = (PLACEHOLDER_VALUE, "TODO")

STATE_SET = "set"
STATE_PLACEHOLDER = "placeholder"
STATE_NO_VERSION = "missing-version"


@dataclass
class SecretStatus:
    """A secret in the project and whether it holds a usable value."""
    name: str
    project_id: str
    state: str

    @property
    def usable(self) -> bool:
        return self.state == STATE_SET
