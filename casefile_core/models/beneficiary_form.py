# =============================================================================
# casefile_core/models/beneficiary_form.py
# Beneficiary profile form: one typed value per field kind
# =============================================================================

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Union

from casefile_core.errors import ValidationError
from casefile_core.models.records import BeneficiaryRecord, NEW_BENEFICIARY_ID

DATE_DISPLAY_FORMAT = "%d/%m/%Y"


class CivilStatus(Enum):
    NOT_MARRIED = 0
    MARRIED = 1
    DIVORCED = 2
    WIDOWED = 3


class Gender(Enum):
    MALE = 0
    FEMALE = 1


@dataclass(frozen=True)
class CountyRef:
    id: int
    name: str
    code: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> CountyRef:
        return cls(id=int(data["id"]), name=str(data["name"]), code=str(data.get("code") or ""))

    def to_dict(self) -> Dict:
        return {"id": self.id, "name": self.name, "code": self.code}


@dataclass(frozen=True)
class CityRef:
    id: int
    name: str

    @classmethod
    def from_dict(cls, data: Dict) -> CityRef:
        return cls(id=int(data["id"]), name=str(data["name"]))

    def to_dict(self) -> Dict:
        return {"id": self.id, "name": self.name}


# -----------------------------------------------------------------------------
# Field kinds
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class NameField:
    value: Optional[str] = None
    title: str = "Name"

    def display(self) -> str:
        return self.value or ""


@dataclass(frozen=True)
class BirthDateField:
    value: Optional[date] = None
    title: str = "Birth date"

    def display(self) -> str:
        return self.value.strftime(DATE_DISPLAY_FORMAT) if self.value else ""


@dataclass(frozen=True)
class CivilStatusField:
    value: Optional[CivilStatus] = None
    title: str = "Civil status"
    choices: tuple = tuple(CivilStatus)

    def display(self) -> str:
        return self.value.name.replace("_", " ").title() if self.value else ""


@dataclass(frozen=True)
class CountyField:
    value: Optional[CountyRef] = None
    title: str = "County"

    def display(self) -> str:
        return self.value.name if self.value else ""


@dataclass(frozen=True)
class CityField:
    value: Optional[CityRef] = None
    title: str = "City"

    def display(self) -> str:
        return self.value.name if self.value else ""


@dataclass(frozen=True)
class GenderField:
    value: Optional[Gender] = None
    title: str = "Gender"
    choices: tuple = tuple(Gender)

    def display(self) -> str:
        return self.value.name.title() if self.value else ""


ProfileField = Union[NameField, BirthDateField, CivilStatusField, CountyField, CityField, GenderField]


@dataclass(frozen=True)
class BeneficiaryForm:
    """Add/edit form for a beneficiary profile."""
    name: NameField = field(default_factory=NameField)
    birth_date: BirthDateField = field(default_factory=BirthDateField)
    civil_status: CivilStatusField = field(default_factory=CivilStatusField)
    county: CountyField = field(default_factory=CountyField)
    city: CityField = field(default_factory=CityField)
    gender: GenderField = field(default_factory=GenderField)

    @classmethod
    def from_beneficiary(cls, beneficiary: Optional[BeneficiaryRecord]) -> BeneficiaryForm:
        if beneficiary is None:
            return cls()
        county = None
        if beneficiary.county is not None and beneficiary.county_id is not None:
            county = CountyRef(id=beneficiary.county_id, name=beneficiary.county)
        city = None
        if beneficiary.city is not None and beneficiary.city_id is not None:
            city = CityRef(id=beneficiary.city_id, name=beneficiary.city)
        return cls(
            name=NameField(beneficiary.name),
            birth_date=BirthDateField(beneficiary.birth_date),
            civil_status=CivilStatusField(
                CivilStatus(beneficiary.civil_status) if beneficiary.civil_status is not None else None
            ),
            county=CountyField(county),
            city=CityField(city),
            gender=GenderField(
                Gender(beneficiary.gender) if beneficiary.gender is not None else None
            ),
        )

    @property
    def fields(self) -> List[ProfileField]:
        return [self.name, self.birth_date, self.civil_status, self.county, self.city, self.gender]

    @property
    def can_continue(self) -> bool:
        return all(f.value is not None for f in self.fields)

    def with_county(self, county: Optional[CountyRef]) -> BeneficiaryForm:
        """Changing the county invalidates the chosen city."""
        if county == self.county.value:
            return self
        return replace(self, county=CountyField(county), city=CityField())

    def with_city(self, city: Optional[CityRef]) -> BeneficiaryForm:
        if city is not None and self.county.value is None:
            raise ValidationError("Select a county before choosing a city", fields=["county"])
        return replace(self, city=CityField(city))

    def process_form(
        self,
        beneficiary_id: int = NEW_BENEFICIARY_ID,
        user_id: Optional[int] = None,
    ) -> BeneficiaryRecord:
        """Validate the form and turn it into a beneficiary record."""
        missing = [f.title for f in self.fields if f.value is None]
        if isinstance(self.name.value, str) and not self.name.value.strip():
            missing.insert(0, self.name.title)
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                fields=missing,
            )
        return BeneficiaryRecord(
            id=beneficiary_id,
            name=self.name.value.strip(),
            birth_date=self.birth_date.value,
            civil_status=self.civil_status.value.value,
            county_id=self.county.value.id,
            county=self.county.value.name,
            city_id=self.city.value.id,
            city=self.city.value.name,
            gender=self.gender.value.value,
            user_id=user_id,
        )
