"""Fixed clinical field schema and the structured record produced from it."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ExtractionMethod(str, Enum):
    """How a FieldRecord was produced."""

    PENDING = "pending"
    STRUCTURED = "structured"  # Model followed the delimiter contract
    PARTIAL = "partial"  # Some chunks failed, others succeeded
    FORMAT_ERROR = "format_error"  # Model ignored the contract
    FAILED = "failed"  # Model call itself failed
    NO_TEXT = "no_text"  # Nothing to extract from


class FieldDefinition(BaseModel):
    """One entry of the fixed clinical schema."""

    key: str
    number: int = Field(..., ge=1)
    label: str
    description: str
    multi_value: bool = Field(
        default=False,
        description="Merge chunk values as a union instead of keeping the longest",
    )

    @property
    def numbered_label(self) -> str:
        return f"{self.number}. {self.label}"

    class Config:
        frozen = True


FIELD_DEFINITIONS: tuple[FieldDefinition, ...] = (
    FieldDefinition(
        key="patient_name",
        number=1,
        label="Patient Name",
        description="Patient's full name (look for names, patient identifiers)",
    ),
    FieldDefinition(
        key="patient_dob",
        number=2,
        label="Date of Birth",
        description="Date of birth or age (look for DOB, birth date, age)",
    ),
    FieldDefinition(
        key="insurance",
        number=3,
        label="Insurance Information",
        description="Insurance (Medicare, Medicaid, insurance company names, policy numbers)",
    ),
    FieldDefinition(
        key="location",
        number=4,
        label="Location/Facility",
        description="Medical facility (hospital name, clinic, medical center)",
    ),
    FieldDefinition(
        key="diagnosis",
        number=5,
        label="Diagnosis (Dx)",
        description="Primary diagnosis (main medical condition, chief complaint)",
        multi_value=True,
    ),
    FieldDefinition(
        key="pcp",
        number=6,
        label="Primary Care Provider (PCP)",
        description="Primary care provider (doctor names, PCP, referring physician)",
    ),
    FieldDefinition(
        key="discharge",
        number=7,
        label="Discharge (DC)",
        description="Discharge disposition (where patient goes: home, facility, etc.)",
    ),
    FieldDefinition(
        key="wounds",
        number=8,
        label="Wounds/Injuries",
        description="Physical findings (wounds, injuries, physical exam results)",
        multi_value=True,
    ),
    FieldDefinition(
        key="medications",
        number=9,
        label="Medications & Antibiotics",
        description="Medications (all drugs, prescriptions, antibiotics, treatments mentioned)",
        multi_value=True,
    ),
    FieldDefinition(
        key="cardiac_drips",
        number=10,
        label="Cardiac Medications/Drips",
        description="Cardiac medications (heart-specific drugs and drips only)",
        multi_value=True,
    ),
    FieldDefinition(
        key="labs_and_vitals",
        number=11,
        label="Labs & Vital Signs",
        description="Laboratory data (lab results, vital signs, test values)",
        multi_value=True,
    ),
    FieldDefinition(
        key="face_to_face",
        number=12,
        label="Face-to-Face Evaluations",
        description="History and physical / face-to-face evaluation notes, and whether it is signed",
        multi_value=True,
    ),
    FieldDefinition(
        key="history",
        number=13,
        label="Medical History",
        description="Medical history (past conditions, previous medical issues)",
        multi_value=True,
    ),
    FieldDefinition(
        key="mental_health_state",
        number=14,
        label="Mental Health State",
        description="Mental status (cognitive state, mental health notes)",
        multi_value=True,
    ),
    FieldDefinition(
        key="additional_comments",
        number=15,
        label="Additional Comments",
        description="Additional notes (other important clinical information)",
        multi_value=True,
    ),
)

FIELD_KEYS: tuple[str, ...] = tuple(d.key for d in FIELD_DEFINITIONS)
FIELD_COUNT = len(FIELD_DEFINITIONS)

_BY_KEY = {d.key: d for d in FIELD_DEFINITIONS}
_BY_NUMBER = {d.number: d for d in FIELD_DEFINITIONS}


def get_field(key: str) -> FieldDefinition:
    """Look up a field definition by key.

    Raises:
        KeyError: If the key is not part of the schema.
    """
    try:
        return _BY_KEY[key]
    except KeyError:
        raise KeyError(f"Unknown field key: {key!r}") from None


def get_field_by_number(number: int) -> Optional[FieldDefinition]:
    """Look up a field definition by its 1-based number."""
    return _BY_NUMBER.get(number)


class FieldRecord(BaseModel):
    """
    Structured clinical fields extracted from one document.

    Every schema field is always present as a string (possibly empty), so
    callers never need to existence-check a key.
    """

    patient_name: str = ""
    patient_dob: str = ""
    insurance: str = ""
    location: str = ""
    diagnosis: str = ""
    pcp: str = ""
    discharge: str = ""
    wounds: str = ""
    medications: str = ""
    cardiac_drips: str = ""
    labs_and_vitals: str = ""
    face_to_face: str = ""
    history: str = ""
    mental_health_state: str = ""
    additional_comments: str = ""

    # Metadata
    extraction_method: ExtractionMethod = Field(default=ExtractionMethod.PENDING)
    extracted_at: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[str] = None
    chunk_count: int = Field(default=0, ge=0)
    matched_field_count: int = Field(default=0, ge=0)

    def get(self, key: str) -> str:
        """Value of a schema field."""
        get_field(key)
        return getattr(self, key)

    def field_values(self) -> dict[str, str]:
        """Schema fields in schema order."""
        return {key: getattr(self, key) for key in FIELD_KEYS}

    @property
    def filled_keys(self) -> list[str]:
        return [key for key, value in self.field_values().items() if value]

    @property
    def is_degraded(self) -> bool:
        """True if extraction did not fully succeed."""
        return self.extraction_method in (
            ExtractionMethod.PARTIAL,
            ExtractionMethod.FORMAT_ERROR,
            ExtractionMethod.FAILED,
        )
