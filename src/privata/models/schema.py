"""Model schemas: field name to sensitivity class."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FieldClass(str, Enum):
    """Sensitivity classes for model fields."""

    PII = "pii"  # Name, email, address, phone
    PHI = "phi"  # Diagnoses, medications, lab results
    METADATA = "metadata"  # Ids, timestamps, status


class ModelSchema(BaseModel):
    """Registered sensitivity mapping for one entity type.

    Fields absent from ``fields`` are treated as METADATA by the classifier.
    ``categories`` optionally assigns a finer data category (``contact``,
    ``health``) used by restrictions; a field without one falls back to its
    class name.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    fields: dict[str, FieldClass] = Field(default_factory=dict)
    categories: dict[str, str] = Field(default_factory=dict)
    subject_field: str = Field(default="subject_id", min_length=1)
    entity_type: str | None = None

    @model_validator(mode="after")
    def _subject_link_is_metadata(self) -> "ModelSchema":
        cls = self.fields.get(self.subject_field)
        if cls is not None and cls != FieldClass.METADATA:
            raise ValueError(
                f"subject_field '{self.subject_field}' must be METADATA, got {cls.value}"
            )
        unknown = set(self.categories) - set(self.fields)
        if unknown:
            raise ValueError(f"categories reference undeclared fields: {sorted(unknown)}")
        return self

    def fields_of(self, field_class: FieldClass) -> list[str]:
        """Declared fields of one class, in declaration order."""
        return [name for name, cls in self.fields.items() if cls == field_class]

    @property
    def sensitive_fields(self) -> list[str]:
        return [name for name, cls in self.fields.items() if cls != FieldClass.METADATA]

    def category_of(self, field: str) -> str:
        if field in self.categories:
            return self.categories[field]
        return self.fields.get(field, FieldClass.METADATA).value

    @property
    def audit_entity_type(self) -> str:
        return self.entity_type or self.name
