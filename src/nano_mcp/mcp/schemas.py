from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nano_mcp.core.validation import (
    is_valid_address,
    is_valid_private_key,
    is_valid_raw_amount,
)


def check_address(value: str) -> str:
    if not is_valid_address(value):
        raise ValueError("must be a Nano address (nano_ followed by 60 base32 characters)")
    return value


def check_private_key(value: str) -> str:
    if not is_valid_private_key(value):
        raise ValueError("must be 64 hexadecimal characters")
    return value


class AddressParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str

    validate_address = field_validator("address")(check_address)


class KeyedAddressParams(AddressParams):
    privateKey: str = Field(repr=False)

    validate_private_key = field_validator("privateKey")(check_private_key)


class SendTransactionParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    fromAddress: str
    toAddress: str
    amountRaw: str
    privateKey: str = Field(repr=False)

    validate_addresses = field_validator("fromAddress", "toAddress")(check_address)
    validate_private_key = field_validator("privateKey")(check_private_key)

    @field_validator("amountRaw", mode="before")
    @classmethod
    def validate_amount(cls, value: Any) -> str:
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str) or not is_valid_raw_amount(value) or int(value) == 0:
            raise ValueError("must be a positive integer string in raw units")
        return value


class ConvertBalanceParams(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    amount: str
    from_unit: Literal["raw", "xno"] = Field(alias="from")
    to_unit: Literal["raw", "xno"] = Field(alias="to")

    @field_validator("amount", mode="before")
    @classmethod
    def stringify_amount(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ToolCallParams(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
