"""
Identity Service - Core business logic for identity reconciliation
Handles contact matching, cluster merging and response building

Flow per observation: match -> reconcile (one write transaction) -> project
(a fresh read once the write has committed).
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from config import settings
from models.contact import PRIMARY, SECONDARY, Contact
from schemas.identify import IdentifyRequest, IdentifyResponse, IdentitySummary
from services.contact_store import ContactStore
from services.exceptions import ConflictError, IntegrityFault, InvalidObservation

logger = logging.getLogger(__name__)

DUPLICATE_FIELDS = "duplicate"
NEW_FIELDS_ONLY = "new_only"
SECONDARY_FIELD_POLICIES = (DUPLICATE_FIELDS, NEW_FIELDS_ONLY)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dedupe(values: List[Optional[str]], first: Optional[str]) -> List[str]:
    ordered = [first] if first else []
    for value in values:
        if value and value not in ordered:
            ordered.append(value)
    return ordered


class IdentityService:
    """
    Core service for identity reconciliation logic
    Handles all business rules for linking customer contacts
    """

    def __init__(
        self,
        store: ContactStore,
        secondary_fields: Optional[str] = None,
        max_retries: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.secondary_fields = secondary_fields or settings.SECONDARY_FIELDS_POLICY
        if self.secondary_fields not in SECONDARY_FIELD_POLICIES:
            raise ValueError(
                f"Unknown secondary fields policy {self.secondary_fields!r}, "
                f"expected one of {SECONDARY_FIELD_POLICIES}"
            )
        self.max_retries = settings.IDENTIFY_MAX_RETRIES if max_retries is None else max_retries
        self.clock = clock

    async def identify_contact(self, request: IdentifyRequest) -> IdentifyResponse:
        """Entry point for the HTTP layer"""
        summary = await self.identify(request.email, request.phoneNumber)
        return IdentifyResponse(contact=summary)

    async def identify(
        self, email: Optional[str] = None, phone_number: Optional[str] = None
    ) -> IdentitySummary:
        """
        Main orchestration method for identity reconciliation

        Algorithm:
        1. Find existing contacts matching email or phone, resolve their primaries
        2. No primaries -> create new primary contact
        3. One primary -> extend its cluster if the observation is new
        4. Several primaries -> merge into the oldest, then extend if needed
        5. Return consolidated contact information

        Steps 1-4 share one transaction. A ConflictError re-runs everything
        from step 1 against fresh data, up to max_retries extra times.
        """
        email = email or None
        phone_number = phone_number or None
        if email is None and phone_number is None:
            raise InvalidObservation("Either email or phoneNumber must be provided")

        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.store.transaction() as tx:
                    primaries = await self.match(tx, email, phone_number)
                    main_primary, _ = await self.reconcile(tx, primaries, email, phone_number)
                return await self.project(main_primary.id)
            except ConflictError as e:
                if attempt > self.max_retries:
                    logger.warning(f"Giving up after {attempt} conflicting attempts: {e}")
                    raise
                logger.warning(f"Conflict on attempt {attempt}, retrying: {e}")

    async def match(self, tx, email: Optional[str], phone_number: Optional[str]) -> List[Contact]:
        """
        Primaries of every live contact sharing the email or phone number,
        deduplicated by id in first-seen order
        """
        primaries: Dict[int, Contact] = {}
        for contact in await self.store.find_contacts(email, phone_number, tx):
            if contact.is_primary():
                primaries.setdefault(contact.id, contact)
                continue

            if contact.linked_id in primaries:
                continue
            primary = await self.store.find_by_id(contact.linked_id, tx)
            if primary is None or not primary.is_primary():
                logger.error(
                    f"Secondary contact {contact.id} has invalid linked_id {contact.linked_id}"
                )
                raise IntegrityFault(
                    f"Secondary contact {contact.id} has invalid linked_id {contact.linked_id}"
                )
            primaries[primary.id] = primary

        return list(primaries.values())

    async def reconcile(
        self,
        tx,
        primaries: List[Contact],
        email: Optional[str],
        phone_number: Optional[str],
    ) -> Tuple[Contact, bool]:
        """
        Fold the observation into the matched clusters

        Returns the surviving primary and whether a new secondary was written;
        a brand new primary reports False.
        """
        if not primaries:
            contact = await self._create_contact(tx, email, phone_number, PRIMARY, None)
            logger.info(f"Created primary contact {contact.id}")
            return contact, False

        main_primary = min(primaries, key=Contact.seniority_key)
        for primary in primaries:
            if primary.id != main_primary.id:
                await self._demote_primary(tx, primary, main_primary)

        cluster = await self.store.find_cluster(main_primary.id, tx)
        new_email, new_phone = self._new_information(cluster, email, phone_number)
        if not (new_email or new_phone):
            return main_primary, False

        if self.secondary_fields == NEW_FIELDS_ONLY:
            email = email if new_email else None
            phone_number = phone_number if new_phone else None
        secondary = await self._create_contact(tx, email, phone_number, SECONDARY, main_primary.id)
        logger.info(f"Created secondary contact {secondary.id} linked to {main_primary.id}")
        return main_primary, True

    async def _demote_primary(self, tx, primary: Contact, main_primary: Contact):
        """Link a newer primary and its whole cluster under the surviving primary"""
        now = self.clock()
        for member in await self.store.find_cluster(primary.id, tx):
            if member.id == primary.id:
                continue
            await self.store.update_contact(
                member.id, {"linked_id": main_primary.id, "updated_at": now}, tx
            )
        await self.store.update_contact(
            primary.id,
            {"linked_id": main_primary.id, "link_precedence": SECONDARY, "updated_at": now},
            tx,
        )
        logger.info(f"Merged primary contact {primary.id} into {main_primary.id}")

    def _new_information(
        self, cluster: List[Contact], email: Optional[str], phone_number: Optional[str]
    ) -> Tuple[bool, bool]:
        """Which of the submitted values the cluster has not seen yet"""
        emails = {c.email for c in cluster if c.email}
        phones = {c.phone_number for c in cluster if c.phone_number}
        return (
            email is not None and email not in emails,
            phone_number is not None and phone_number not in phones,
        )

    async def _create_contact(self, tx, email, phone_number, precedence, linked_id) -> Contact:
        now = self.clock()
        return await self.store.create_contact(
            {
                "email": email,
                "phone_number": phone_number,
                "linked_id": linked_id,
                "link_precedence": precedence,
                "created_at": now,
                "updated_at": now,
            },
            tx,
        )

    async def project(self, primary_id: int) -> IdentitySummary:
        """
        Build the consolidated response from committed state

        Emails and phone numbers keep the order in which the cluster first
        saw them, with the primary contact's own values moved to the front.
        """
        async with self.store.transaction() as tx:
            primary = await self.store.find_by_id(primary_id, tx)
            if primary is not None and primary.is_secondary():
                # Merged away by a concurrent request after our commit
                primary = await self.store.find_by_id(primary.linked_id, tx)
            if primary is None or not primary.is_primary():
                raise IntegrityFault(f"Primary contact {primary_id} no longer resolves")
            cluster = await self.store.find_cluster(primary.id, tx)

        return IdentitySummary(
            primaryContactId=primary.id,
            emails=_dedupe([c.email for c in cluster], primary.email),
            phoneNumbers=_dedupe([c.phone_number for c in cluster], primary.phone_number),
            secondaryContactIds=[c.id for c in cluster if c.id != primary.id],
        )
