from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from config import DEFAULT_CURRENCY

# Prices and percentages are kept to 4 decimal places, the widest ISO 4217
# minor unit. Aggregates of such inputs fit the default decimal context.
INPUT_DECIMALS = 4


def round_input(value: float) -> float:
    return round(value, INPUT_DECIMALS)


class TaxProfile(BaseModel):
    id: str
    name: str
    rate: float = Field(ge=0)
    is_global: bool = False
    is_double: bool = False
    icon: str = "Percent"

    @field_validator("rate")
    @classmethod
    def _round_rate(cls, value: float) -> float:
        return round_input(value)


class BillItem(BaseModel):
    id: str
    name: str
    price: float = Field(ge=0)
    quantity: int = Field(default=1, ge=1)
    added_by: str = ""
    selected_by: List[str] = Field(default_factory=list)
    tax_profile_id: Optional[str] = None
    created_at: Optional[str] = None

    @field_validator("selected_by")
    @classmethod
    def _unique_selectors(cls, value: List[str]) -> List[str]:
        # Membership is what matters; a user id is kept once.
        return list(dict.fromkeys(value))

    @field_validator("price")
    @classmethod
    def _round_price(cls, value: float) -> float:
        return round_input(value)


class Participant(BaseModel):
    user_id: str
    display_name: str
    is_guest: bool = False
    joined_at: Optional[str] = None
    has_submitted: bool = False
    photo_url: Optional[str] = None


class Room(BaseModel):
    id: str
    code: str = ""
    name: Optional[str] = None
    created_at: Optional[str] = None
    created_by: str = ""
    status: str = "active"
    currency: str = DEFAULT_CURRENCY
    tax_profiles: List[TaxProfile] = Field(default_factory=list)
    service_tax_rate: float = Field(default=0, ge=0)
    participants: List[Participant] = Field(default_factory=list)
    left_participants: List[Participant] = Field(default_factory=list)
    expires_at: Optional[str] = None

    @field_validator("service_tax_rate")
    @classmethod
    def _round_service_tax_rate(cls, value: float) -> float:
        return round_input(value)

    def participant_ids(self) -> List[str]:
        return [p.user_id for p in self.participants]

    def find_profile(self, profile_id: str) -> Optional[TaxProfile]:
        return next((p for p in self.tax_profiles if p.id == profile_id), None)
