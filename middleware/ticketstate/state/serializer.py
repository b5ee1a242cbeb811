"""
Properties serializer: converts state payloads to and from their transport string.
"""

import logging
from typing import Generic, Type, TypeVar

from pydantic import BaseModel, ValidationError
from pydantic_core import PydanticSerializationError

from ticketstate.models import AuthenticationProperties
from ticketstate.state.exceptions import StateSerializationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class PropertiesSerializer(Generic[ModelT]):
    """
    JSON serializer for a pydantic payload model.

    Round-trips exactly: `from_string(to_string(p)) == p` for every valid `p`.
    """

    def __init__(self, model_cls: Type[ModelT] = AuthenticationProperties):
        self._model_cls = model_cls

    @property
    def model_cls(self) -> Type[ModelT]:
        return self._model_cls

    def to_string(self, payload: ModelT) -> str:
        """
        Serialize a payload to its JSON transport string.

        Raises:
            StateSerializationError: If payload is not an instance of the
                configured model or cannot be encoded
        """
        if not isinstance(payload, self._model_cls):
            raise StateSerializationError(
                f"Expected {self._model_cls.__name__}, got {type(payload).__name__}"
            )
        try:
            return payload.model_dump_json()
        except PydanticSerializationError as e:
            logger.error(f"Failed to serialize {self._model_cls.__name__}: {e}")
            raise StateSerializationError(f"Failed to serialize state: {e}") from e

    def from_string(self, text: str) -> ModelT:
        """
        Deserialize a JSON transport string back into the payload model.

        Raises:
            StateSerializationError: If the stored text is not valid JSON for the model
        """
        try:
            return self._model_cls.model_validate_json(text)
        except ValidationError as e:
            logger.error(
                f"Failed to deserialize {self._model_cls.__name__}",
                extra={"error_count": e.error_count()}
            )
            raise StateSerializationError(f"Failed to deserialize state: {e}") from e
