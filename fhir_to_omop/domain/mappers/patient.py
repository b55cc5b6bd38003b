"""Patient -> person (+ location)."""

import logging
from typing import Optional

from fhir_to_omop.domain.constants import (
    CONCEPT_GENDER_FEMALE,
    CONCEPT_GENDER_MALE,
    CONCEPT_GENDER_UNKNOWN,
    CONCEPT_HISPANIC_OR_LATINO,
    CONCEPT_NO_MATCHING_CONCEPT,
    CONCEPT_UNKNOWN_RACIAL_GROUP,
    ETHNICITY_SOURCE_HISPANIC_OR_LATINO,
    ETHNICITY_SOURCE_MIXED,
    FHIR_RESOURCE_PATIENT,
    MAX_LOCATION_CITY_LENGTH,
    MAX_LOCATION_COUNTRY_LENGTH,
    MAX_LOCATION_ZIP_LENGTH,
    MAX_SOURCE_VALUE_LENGTH,
    SOURCE_VOCABULARY_ID_GENDER,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.mappers.base import ResourceMapper
from fhir_to_omop.domain.models import IdentityKind, Location, OmopRecord, Person

logger = logging.getLogger(__name__)

_GENDER_DEFAULTS = {"male": CONCEPT_GENDER_MALE, "female": CONCEPT_GENDER_FEMALE}


def _cut(value: Optional[str], max_length: int) -> Optional[str]:
    if value and len(value) > max_length:
        logger.debug(f"The String: {value} is longer than allowed. Cut it to a length of {max_length}.")
        return value[:max_length]
    return value


class PatientMapper(ResourceMapper):
    """Maps a Patient to a person row and, when an address is present, a location row.

    An already loaded patient keeps its person_id; copies of one patient share one.
    """

    resource_type = FHIR_RESOURCE_PATIENT
    tables = ("person", "location")

    def keys(self, data):
        identifier = fhir.extract_identifier(
            data, "MR", self.context.identifier_type_system, self.context.identifier_systems
        )
        return fhir.extract_id(data), identifier or fhir.extract_first_identifier(data)

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        resource_id = self.resource_label(logical_id, identifier)
        birth_date = self.require(fhir.parse_datetime(data.get("birthDate")), "birthDate", resource_id)

        source_value = _cut(identifier, MAX_SOURCE_VALUE_LENGTH)
        gender = data.get("gender")
        person = Person(
            person_source_value=source_value[4:] if source_value else None,
            gender_concept_id=self._gender_concept_id(gender),
            gender_source_value=gender,
            year_of_birth=birth_date.year,
            month_of_birth=birth_date.month,
            day_of_birth=birth_date.day,
            birth_datetime=birth_date,
            person_id=self.references.assign_id(IdentityKind.PERSON, identifier, logical_id),
            fhir_logical_id=logical_id,
            fhir_identifier=identifier,
        )

        self._set_race_and_ethnicity(person, self._ethnic_group(data), resource_id)

        records: list[OmopRecord] = []
        location = self._location(data, logical_id, identifier)
        if location is not None:
            person.location_id = location.location_id
            records.append(location)
        records.insert(0, person)
        return records

    def _gender_concept_id(self, gender: Optional[str]) -> int:
        if not gender or not gender.strip():
            return CONCEPT_GENDER_UNKNOWN
        entry = self.concepts.resolve_custom(SOURCE_VOCABULARY_ID_GENDER, gender)
        if entry.target_concept_id == CONCEPT_NO_MATCHING_CONCEPT:
            return _GENDER_DEFAULTS.get(gender, CONCEPT_GENDER_UNKNOWN)
        return entry.target_concept_id

    def _ethnic_group(self, data: dict) -> Optional[dict]:
        for extension in data.get("extension") or []:
            if extension.get("url") == self.context.ethnic_group_extension:
                return extension.get("valueCoding")
        return None

    def _set_race_and_ethnicity(self, person: Person, coding: Optional[dict], resource_id: str) -> None:
        code = (coding or {}).get("code")
        if not code:
            person.race_concept_id = CONCEPT_UNKNOWN_RACIAL_GROUP
            person.ethnicity_concept_id = CONCEPT_NO_MATCHING_CONCEPT
            return

        if code == ETHNICITY_SOURCE_HISPANIC_OR_LATINO:
            person.race_concept_id = CONCEPT_UNKNOWN_RACIAL_GROUP
            person.ethnicity_concept_id = CONCEPT_HISPANIC_OR_LATINO
            person.ethnicity_source_concept_id = CONCEPT_HISPANIC_OR_LATINO
            person.ethnicity_source_value = code
            return

        if code == ETHNICITY_SOURCE_MIXED:
            person.race_concept_id = CONCEPT_NO_MATCHING_CONCEPT
            person.race_source_value = code
            person.ethnicity_source_value = code
            return

        race = self.concepts.resolve_race_to_standard(coding.get("system"), code, resource_id)
        if race is not None:
            person.race_concept_id = race.target_concept_id
            person.race_source_concept_id = race.source_concept_id
            person.race_source_value = code

    def _location(self, data: dict, logical_id: Optional[str], identifier: Optional[str]) -> Optional[Location]:
        addresses = data.get("address") or []
        if not addresses:
            return None
        address = addresses[0]

        zip_code = _cut(address.get("postalCode"), MAX_LOCATION_ZIP_LENGTH)
        city = _cut(address.get("city"), MAX_LOCATION_CITY_LENGTH)
        country = address.get("country")
        if country:
            country = _cut("".join(country.split()), MAX_LOCATION_COUNTRY_LENGTH)
        if not zip_code and not city and not country:
            return None

        source_value = f"{zip_code or ''};{city or ''};{country or ''}"
        location_id = None
        if self.context.bulk:
            location_id = self.context.id_mappings.locations.get_or_create(logical_id or identifier)
        return Location(
            location_id=location_id,
            zip=zip_code,
            city=city,
            country=country,
            location_source_value=source_value,
            fhir_logical_id=logical_id,
            fhir_identifier=identifier,
        )
