"""Patient profile models."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNKNOWN_CONDITION = "Unknown condition"
DEFAULT_AGE = 50


class BloodPressure(BaseModel):
    """Blood pressure reading in mmHg."""

    model_config = ConfigDict(frozen=True)

    systolic: int | None = None
    diastolic: int | None = None


class LabValues(BaseModel):
    """Sparse set of lab values extracted from the record."""

    model_config = ConfigDict(frozen=True)

    hba1c: float | None = Field(None, description="HbA1c percentage")
    egfr: float | None = Field(None, description="Estimated GFR (mL/min/1.73m2)")
    creatinine: float | None = Field(None, description="Serum creatinine (mg/dL)")
    glucose: float | None = Field(None, description="Blood glucose (mg/dL)")
    cholesterol: float | None = Field(None, description="Total cholesterol (mg/dL)")
    blood_pressure: BloodPressure | None = None

    def present(self) -> dict[str, float | str]:
        """Return only the values that were extracted."""
        values: dict[str, float | str] = {}
        for name in ("hba1c", "egfr", "creatinine", "glucose", "cholesterol"):
            value = getattr(self, name)
            if value is not None:
                values[name] = value
        if self.blood_pressure and self.blood_pressure.systolic is not None:
            values["blood_pressure"] = f"{self.blood_pressure.systolic}/{self.blood_pressure.diastolic}"
        return values


class Demographics(BaseModel):
    """Structured demographics supplied alongside free text."""

    age: int | None = Field(None, gt=0, le=150)
    location: str | None = None


class PatientProfile(BaseModel):
    """Structured patient profile produced by the extractor.

    Immutable once created; later stages read it but never modify it.
    """

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "diagnosis": "Type 2 Diabetes",
                "age": 65,
                "medications": ["Metformin"],
                "comorbidities": ["hypertension"],
                "location": "Atlanta, GA",
            }
        },
    )

    diagnosis: str = Field(UNKNOWN_CONDITION, description="Primary diagnosis")
    diagnosis_code: str | None = Field(None, description="ICD-10 code if known")
    age: int = Field(DEFAULT_AGE, gt=0, description="Age in years")
    medications: list[str] = Field(default_factory=list)
    comorbidities: list[str] = Field(default_factory=list)
    biomarkers: list[str] = Field(default_factory=list)
    prior_treatments: list[str] = Field(default_factory=list)
    lab_values: LabValues = Field(default_factory=LabValues)
    location: str | None = None
    insurance: str | None = None
    recent_hospitalization: bool = False
    smoking_history: str | None = None
    performance_status: str | None = None

    @field_validator("diagnosis", mode="before")
    @classmethod
    def default_diagnosis(cls, v: str | None) -> str:
        if v is None or not str(v).strip():
            return UNKNOWN_CONDITION
        return str(v).strip()

    def search_terms(self) -> list[str]:
        """Diagnosis first, then comorbidities, biomarkers and prior treatments.

        Deduplicated case-insensitively with first occurrence kept.
        """
        terms: list[str] = []
        seen: set[str] = set()
        for term in [self.diagnosis, *self.comorbidities, *self.biomarkers, *self.prior_treatments]:
            cleaned = term.strip()
            if cleaned and cleaned.lower() not in seen:
                seen.add(cleaned.lower())
                terms.append(cleaned)
        return terms

    def summary(self) -> str:
        """One-line description used in reports."""
        parts = [f"{self.age}-year-old patient with {self.diagnosis}"]
        if self.medications:
            parts.append(f"on {', '.join(self.medications)}")
        if self.comorbidities:
            parts.append(f"comorbidities: {', '.join(self.comorbidities)}")
        if self.location:
            parts.append(f"located in {self.location}")
        return "; ".join(parts)
