"""
Registry entities: collections and biobanks.

Registry payloads are parsed into typed records at the boundary, so a malformed
response fails with RegistryResponseError at the point of arrival rather than
somewhere inside the sync pass.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import typing
from dataclasses import dataclass, field

from .converter import (
    MIRIAM_PREFIX,
    convert_diagnosis,
    convert_material,
    convert_sex,
    convert_storage_temperature,
    strip_miriam_prefix,
)
from .errors import RegistryResponseError
from .ids import country_code_of

logger = logging.getLogger(__name__)

# attributes owned by the registry; copied into the outgoing collection before a PUT
REGISTRY_OWNED_ATTRIBUTES = (
    "name",
    "description",
    "contact",
    "country",
    "biobank",
    "type",
    "data_categories",
    "network",
)

_SCALAR_REFERENCES = ("biobank", "contact", "head", "country", "location")
_LIST_REFERENCES = ("type", "data_categories", "network", "sex", "materials",
                    "storage_temperatures", "diagnosis_available")


def _reference_id(value: typing.Any, attribute: str) -> typing.Optional[str]:
    # references arrive expanded, as {"id": ...} (entities) or {"name": ...} (ontology terms)
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("id", "name"):
            if isinstance(value.get(key), str):
                return value[key]
    raise RegistryResponseError(f"Attribute {attribute!r}: cannot read reference from {value!r}")


def _reference_ids(value: typing.Any, attribute: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    ids = [_reference_id(item, attribute) for item in value]
    return [i for i in ids if i is not None]


def _optional_int(value: typing.Any, attribute: str) -> typing.Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RegistryResponseError(f"Attribute {attribute!r}: expected an integer, got {value!r}")


def _unique(values: typing.Iterable[typing.Optional[str]]) -> list[str]:
    return list(dict.fromkeys(v for v in values if v is not None))


def _magnitude(count: typing.Optional[int]) -> typing.Optional[int]:
    if count is None or count <= 0:
        return None
    return int(math.floor(math.log10(count)))


@dataclass
class Collection:
    """
    A registry collection.

    Attributes:
        id: BBMRI-ERIC collection id.
        biobank: Id of the owning biobank.
        size: Number of samples.
        number_of_donors: Number of distinct donors.
        age_low: Youngest donor age in years.
        age_high: Oldest donor age in years.
        sex: Sex terms present in the collection.
        materials: Sample material types.
        storage_temperatures: Storage temperature terms.
        diagnosis_available: Bare ICD-10 codes (e.g. 'C75').
    The remaining attributes (name, description, contact, ...) are owned by
    the registry and filled in by merge_registry_attributes.
    """

    id: str
    biobank: typing.Optional[str] = None
    name: typing.Optional[str] = None
    description: typing.Optional[str] = None
    contact: typing.Optional[str] = None
    head: typing.Optional[str] = None
    country: typing.Optional[str] = None
    location: typing.Optional[str] = None
    url: typing.Optional[str] = None
    network: list[str] = field(default_factory=list)
    type: list[str] = field(default_factory=list)
    data_categories: list[str] = field(default_factory=list)
    size: typing.Optional[int] = None
    number_of_donors: typing.Optional[int] = None
    age_low: typing.Optional[int] = None
    age_high: typing.Optional[int] = None
    sex: list[str] = field(default_factory=list)
    materials: list[str] = field(default_factory=list)
    storage_temperatures: list[str] = field(default_factory=list)
    diagnosis_available: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Collection id must be a non-empty string")

    @property
    def order_of_magnitude(self) -> typing.Optional[int]:
        return _magnitude(self.size)

    @property
    def order_of_magnitude_donors(self) -> typing.Optional[int]:
        return _magnitude(self.number_of_donors)

    @classmethod
    def from_registry_dict(cls, entity: typing.Any) -> "Collection":
        """Parse a collection entity as returned by the registry."""
        if not isinstance(entity, dict) or not isinstance(entity.get("id"), str):
            raise RegistryResponseError(f"Malformed collection entity: {entity!r}")
        kwargs: dict[str, typing.Any] = {"id": entity["id"]}
        for attribute in ("name", "description", "url"):
            value = entity.get(attribute)
            if value is not None and not isinstance(value, str):
                raise RegistryResponseError(f"Attribute {attribute!r}: expected a string, got {value!r}")
            kwargs[attribute] = value
        for attribute in _SCALAR_REFERENCES:
            kwargs[attribute] = _reference_id(entity.get(attribute), attribute)
        for attribute in _LIST_REFERENCES:
            kwargs[attribute] = _reference_ids(entity.get(attribute), attribute)
        for attribute in ("size", "number_of_donors", "age_low", "age_high"):
            kwargs[attribute] = _optional_int(entity.get(attribute), attribute)
        return cls(**kwargs)

    def combine(self, other: "Collection") -> None:
        """Copy every non-empty attribute of ``other`` onto this collection."""
        for f in dataclasses.fields(self):
            value = getattr(other, f.name)
            if value is None or value == []:
                continue
            setattr(self, f.name, value)

    def merge_registry_attributes(self, fetched: "Collection") -> None:
        for attribute in REGISTRY_OWNED_ATTRIBUTES:
            value = getattr(fetched, attribute)
            if value is None or value == []:
                continue
            setattr(self, attribute, value)

    def apply_diagnosis_corrections(self, corrections: dict[str, typing.Optional[str]]) -> None:
        corrected = []
        for diagnosis in self.diagnosis_available:
            key = diagnosis if diagnosis.startswith(MIRIAM_PREFIX) else MIRIAM_PREFIX + diagnosis
            replacement = corrections.get(key, key)
            if replacement is None:
                continue
            corrected.append(strip_miriam_prefix(replacement))
        self.diagnosis_available = _unique(corrected)

    def to_registry_dict(self) -> dict[str, typing.Any]:
        """
        Registry PUT form: vocabulary lists converted, de-duplicated and
        null-filtered, derived magnitudes added, empty attributes dropped.
        """
        entity: dict[str, typing.Any] = {
            "id": self.id,
            "biobank": self.biobank,
            "name": self.name,
            "description": self.description,
            "contact": self.contact,
            "head": self.head,
            "country": self.country,
            "location": self.location,
            "url": self.url,
            "network": list(self.network),
            "type": list(self.type),
            "data_categories": list(self.data_categories),
            "size": self.size,
            "order_of_magnitude": self.order_of_magnitude,
            "number_of_donors": self.number_of_donors,
            "order_of_magnitude_donors": self.order_of_magnitude_donors,
            "age_low": self.age_low,
            "age_high": self.age_high,
            "sex": _unique(convert_sex(s) for s in self.sex if s is not None),
            "materials": _unique(convert_material(m) for m in self.materials),
            "storage_temperatures": _unique(convert_storage_temperature(t) for t in self.storage_temperatures),
            "diagnosis_available": _unique(convert_diagnosis(d) for d in self.diagnosis_available),
        }
        return {k: v for k, v in entity.items() if v is not None and v != []}


class Collections:
    """Collections keyed by id, iterated in id order."""

    def __init__(self, collections: typing.Iterable[Collection] = ()):
        self._by_id: dict[str, Collection] = {}
        for collection in collections:
            self.add(collection)

    def add(self, collection: Collection) -> None:
        existing = self._by_id.get(collection.id)
        if existing is None:
            self._by_id[collection.id] = collection
        else:
            existing.combine(collection)

    def get(self, collection_id: str) -> typing.Optional[Collection]:
        return self._by_id.get(collection_id)

    @property
    def ids(self) -> list[str]:
        return sorted(self._by_id)

    def __iter__(self):
        return iter(self._by_id[i] for i in self.ids)

    def __len__(self) -> int:
        return len(self._by_id)

    @property
    def country_code(self) -> typing.Optional[str]:
        """Country of the first collection, falling back to its id prefix."""
        first = next(iter(self), None)
        if first is None:
            return None
        if first.country:
            return first.country.upper()
        return country_code_of(first.id)

    def merge_registry_attributes(self, fetched: "Collections") -> bool:
        """
        Copy registry-owned attributes from ``fetched`` onto the matching local collections.

        Returns True if at least one collection matched, or if the registry knows
        none of them yet.
        """
        if len(fetched) == 0:
            return True
        merged = 0
        for collection in self:
            registry_collection = fetched.get(collection.id)
            if registry_collection is None:
                logger.warning(f"Collection {collection.id!r} not found in the registry")
                continue
            collection.merge_registry_attributes(registry_collection)
            merged += 1
        return merged > 0

    def apply_diagnosis_corrections(self, corrections: dict[str, typing.Optional[str]]) -> None:
        for collection in self:
            collection.apply_diagnosis_corrections(corrections)

    def to_registry_list(self) -> list[dict[str, typing.Any]]:
        return [collection.to_registry_dict() for collection in self]


@dataclass
class Biobank:
    """
    A registry biobank.

    Attributes:
        id: BBMRI-ERIC biobank id (e.g. 'bbmri-eric:ID:DE_12345').
        juridical_person: Legal entity operating the biobank.
        capabilities: Capability terms advertised in the registry.
        contact_email: Email of the biobank contact.
    """

    id: str
    name: typing.Optional[str] = None
    acronym: typing.Optional[str] = None
    description: typing.Optional[str] = None
    url: typing.Optional[str] = None
    juridical_person: typing.Optional[str] = None
    capabilities: list[str] = field(default_factory=list)
    contact_email: typing.Optional[str] = None
    location: typing.Optional[str] = None
    country: typing.Optional[str] = None

    @classmethod
    def from_registry_dict(cls, entity: typing.Any) -> "Biobank":
        if not isinstance(entity, dict) or not isinstance(entity.get("id"), str):
            raise RegistryResponseError(f"Malformed biobank entity: {entity!r}")
        contact = entity.get("contact")
        if isinstance(contact, dict):
            contact_email = contact.get("email")
        else:
            contact_email = entity.get("contact_email")
        return cls(
            id=entity["id"],
            name=entity.get("name"),
            acronym=entity.get("acronym"),
            description=entity.get("description"),
            url=entity.get("url"),
            juridical_person=entity.get("juridical_person"),
            capabilities=_reference_ids(entity.get("capabilities"), "capabilities"),
            contact_email=contact_email,
            location=entity.get("location"),
            country=_reference_id(entity.get("country"), "country"),
        )

    def update_from(self, registry_biobank: "Biobank") -> None:
        """Take over the registry's descriptive attributes, keeping the local id."""
        for f in dataclasses.fields(self):
            if f.name in ("id", "country"):
                continue
            value = getattr(registry_biobank, f.name)
            if value is not None and value != []:
                setattr(self, f.name, value)
