"""Tagged validation result: a request is either Ok(value) or Err(reasons)."""
from dataclasses import dataclass
from typing import Generic, NoReturn, TypeVar, Union

from infrastructure.llm.errors import InputValidationError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    reasons: tuple[str, ...]

    def error(self) -> InputValidationError:
        return InputValidationError(self.reasons)

    def unwrap(self) -> NoReturn:
        raise self.error()


Result = Union[Ok[T], Err]
