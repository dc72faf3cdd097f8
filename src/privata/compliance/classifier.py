"""Field sensitivity classification.

Schemas are registered once per model and looked up by name. Classification is
a pure function of the registered schema: declared fields keep their class,
unknown fields are METADATA.
"""

from typing import Iterable

import structlog

from privata.exceptions import UnknownModel
from privata.models.schema import FieldClass, ModelSchema

logger = structlog.get_logger(__name__)


class ModelRegistry:
    """Registered model schemas keyed by model name."""

    def __init__(self, schemas: Iterable[ModelSchema] = ()):
        self._schemas: dict[str, ModelSchema] = {}
        for schema in schemas:
            self.register(schema)

    def register(self, schema: ModelSchema) -> ModelSchema:
        """Register a schema. Re-registering a name overwrites it."""
        if schema.name in self._schemas:
            logger.info("Model schema replaced", model=schema.name)
        self._schemas[schema.name] = schema
        logger.debug(
            "Model schema registered",
            model=schema.name,
            pii=schema.fields_of(FieldClass.PII),
            phi=schema.fields_of(FieldClass.PHI),
        )
        return schema

    def get(self, model: str) -> ModelSchema:
        try:
            return self._schemas[model]
        except KeyError:
            raise UnknownModel(model) from None

    def __contains__(self, model: str) -> bool:
        return model in self._schemas

    @property
    def models(self) -> list[str]:
        return list(self._schemas)

    def schemas(self) -> list[ModelSchema]:
        return list(self._schemas.values())


class FieldClassifier:
    """Map field names of a registered model to sensitivity classes."""

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def classify(self, model: str, field_names: Iterable[str]) -> dict[str, FieldClass]:
        """Classify fields of a model.

        Args:
            model: Registered model name
            field_names: Field names, possibly unknown or dotted paths

        Returns:
            Field name to class. Dotted paths are classified by their root
            field so ``address.city`` inherits the class of ``address``.

        Raises:
            UnknownModel: If the model was never registered
        """
        schema = self.registry.get(model)
        result: dict[str, FieldClass] = {}
        for name in field_names:
            root = name.split(".", 1)[0]
            result[name] = schema.fields.get(root, FieldClass.METADATA)
        return result

    def sensitive(self, model: str, field_names: Iterable[str]) -> dict[str, FieldClass]:
        """Only the PII/PHI fields among ``field_names``."""
        return {
            name: cls
            for name, cls in self.classify(model, field_names).items()
            if cls != FieldClass.METADATA
        }

    def category(self, model: str, field_name: str) -> str:
        """Data category used by restrictions."""
        return self.registry.get(model).category_of(field_name.split(".", 1)[0])
