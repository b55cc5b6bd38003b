"""Consent (resuscitation status) -> observation."""

import logging

from fhir_to_omop.domain.constants import (
    CONCEPT_EHR,
    CONCEPT_FOR_RESUSCITATION,
    CONCEPT_NOT_FOR_RESUSCITATION,
    CONCEPT_RESUSCITATION_STATUS,
    CONSENT_CATEGORY_DNR,
    CONSENT_CATEGORY_SYSTEM,
    FHIR_RESOURCE_CONSENT,
    FHIR_RESOURCE_CONSENT_ACCEPTABLE_STATUS_LIST,
    SNOMED_FOR_RESUSCITATION,
    SNOMED_NOT_FOR_RESUSCITATION,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.mappers.base import ResourceMapper, SkipResource
from fhir_to_omop.domain.models import OmopObservation, OmopRecord
from fhir_to_omop.domain.ports import SKIP_FILTERED

logger = logging.getLogger(__name__)

_PROVISION_CONCEPTS = {
    SNOMED_FOR_RESUSCITATION: CONCEPT_FOR_RESUSCITATION,
    SNOMED_NOT_FOR_RESUSCITATION: CONCEPT_NOT_FOR_RESUSCITATION,
}


class ConsentMapper(ResourceMapper):
    """Maps a DNR consent to one observation carrying the resuscitation status."""

    resource_type = FHIR_RESOURCE_CONSENT
    tables = ("observation",)

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        resource_id = self.resource_label(logical_id, identifier)

        status = data.get("status")
        if not status or status not in FHIR_RESOURCE_CONSENT_ACCEPTABLE_STATUS_LIST:
            logger.error(f"The [status] of {resource_id} is not acceptable for writing into OMOP CDM. Skip resource.")
            raise SkipResource(f"Status {status} is not acceptable")

        if not self.is_dnr(data):
            logger.warning(f"No Category [dnr] found in [Consent]:{resource_id}. Skip resource")
            raise SkipResource("Consent is not a resuscitation status", SKIP_FILTERED)

        person_id = self.person_id(data, resource_id)
        start = self.require(fhir.parse_datetime(data.get("dateTime")), "dateTime", resource_id)
        provision_code = self.require(self.provision_code(data), "provision code", resource_id)

        concept_id = _PROVISION_CONCEPTS.get(provision_code)
        if concept_id is None:
            logger.warning(
                f"The [provision code] {provision_code} of {resource_id} is not acceptable for writing "
                f"into OMOP CDM. Skip resource."
            )
            raise SkipResource(f"Provision code {provision_code} is not acceptable")

        return [
            OmopObservation(
                person_id=person_id,
                observation_concept_id=CONCEPT_RESUSCITATION_STATUS,
                observation_type_concept_id=CONCEPT_EHR,
                observation_date=start.date(),
                observation_datetime=start,
                observation_source_value=provision_code,
                observation_source_concept_id=concept_id,
                value_as_string=provision_code,
                value_as_concept_id=concept_id,
                fhir_logical_id=logical_id,
                fhir_identifier=identifier,
            )
        ]

    @staticmethod
    def is_dnr(data: dict) -> bool:
        for category in data.get("category") or []:
            for coding in fhir.codings(category):
                system = (coding.get("system") or "").lower()
                if system == CONSENT_CATEGORY_SYSTEM.lower() and coding["code"].lower() == CONSENT_CATEGORY_DNR:
                    return True
        return False

    @staticmethod
    def provision_code(data: dict):
        codes = (data.get("provision") or {}).get("code") or []
        coding = fhir.first_coding(codes[0]) if codes else None
        code = coding.get("code") if coding else None
        if not code or code.lower() == "unknown":
            return None
        return code
