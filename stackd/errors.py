"""Exceptions raised inside stackd."""


class StackError(Exception):
    """Base exception for stackd errors."""

    pass


class ProjectLoadError(StackError, ValueError):
    """The stack description could not be read or parsed."""

    pass


class StackNotFound(ProjectLoadError):
    pass


class ResolutionError(StackError):
    """A network or dependency target could not be found."""

    pass


class NetworkNotFound(ResolutionError):
    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        super().__init__(f"network '{name}' not found. Available networks: {available}")


class EnvStoreError(StackError):
    """Stack env text could not be encrypted or decrypted."""

    pass
