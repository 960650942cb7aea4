"""Custom exceptions for Skillshelf."""


class SkillShelfError(Exception):
    """Base exception for Skillshelf."""

    pass


class ConfigurationError(SkillShelfError):
    """Configuration-related errors."""

    pass


class InvalidSkillIdError(SkillShelfError):
    """Skill id is not a plain directory basename."""

    def __init__(self, skill_id: str):
        super().__init__("Invalid skill id")
        self.skill_id = skill_id


class InvalidSourceError(SkillShelfError):
    """Skill source string could not be classified."""

    def __init__(self, message: str, source: str = ""):
        super().__init__(message)
        self.source = source


class PathEscapeError(SkillShelfError):
    """Resolved path escapes its confining root."""

    def __init__(self, root: str, target: str):
        super().__init__("Invalid target path")
        self.root = root
        self.target = target


class AcquisitionError(SkillShelfError):
    """Fetching, cloning or extracting a skill source failed."""

    pass


class SkillNotFoundError(SkillShelfError):
    """Skill not found in the registry or managed root."""

    def __init__(self, skill_id: str):
        super().__init__("Skill not found")
        self.skill_id = skill_id


class BuiltInSkillError(SkillShelfError):
    """Operation is not allowed on a bundled skill."""

    def __init__(self, skill_id: str):
        super().__init__("Built-in skills cannot be deleted")
        self.skill_id = skill_id
