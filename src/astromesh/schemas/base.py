"""Base Pydantic model with strict defaults for astromesh configs.

All config schemas inherit from this base so parameter, user, CLI and
internal configs validate the same way.
"""

from pydantic import BaseModel, ConfigDict


class AstromeshBaseModel(BaseModel):
    """Base model for all astromesh configuration schemas.

    - No extra fields allowed
    - Assignments are validated after initialization
    - Enums are stored as their values
    - Strings are stripped of surrounding whitespace
    """

    model_config = ConfigDict(
        extra='forbid',
        validate_assignment=True,
        use_enum_values=True,
        str_strip_whitespace=True,
    )
