from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
import pydantic

from sppo_errors import ValidationError


class LineParams(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    linha: str = Field(min_length=1, max_length=20)


class PositionQuery(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    raio: float = Field(default=1.0, ge=0.1, le=50)

    @field_validator("lat", "lon", "raio", mode="before")
    @classmethod
    def accept_comma_decimal(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().replace(",", ".")
        return value


def _first_error(exc: pydantic.ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def parse_line(linha: Optional[str]) -> LineParams:
    try:
        return LineParams(linha=linha)
    except pydantic.ValidationError as exc:
        raise ValidationError("Invalid line parameter", _first_error(exc)) from exc


def parse_position(args: Mapping[str, str]) -> PositionQuery:
    data = {k: args[k] for k in ("lat", "lon", "raio") if args.get(k) not in (None, "")}
    try:
        return PositionQuery(**data)
    except pydantic.ValidationError as exc:
        raise ValidationError("Invalid position parameters", _first_error(exc)) from exc
