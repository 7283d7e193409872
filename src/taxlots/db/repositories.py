from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from taxlots.db import models
from taxlots.domain.errors import DuplicateOperation
from taxlots.domain.operations import Operation, ParcelSelection
from taxlots.domain.records import Match, MatchedParcel, Parcel, TaxableEvent


class OperationRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_many(self, operations: Iterable[Operation]) -> list[Operation]:
        operations = list(operations)
        incoming = [operation.id for operation in operations]
        stored = set(
            self._session.scalars(select(models.OperationOrm.id).where(models.OperationOrm.id.in_(incoming))).all()
        )
        seen: set[str] = set()
        for operation in operations:
            if operation.id in stored or operation.id in seen:
                raise DuplicateOperation(
                    f"Operation {operation.id} is already stored",
                    account_id=operation.account_id,
                    asset_id=operation.asset_id,
                    operation_id=operation.id,
                    timestamp=operation.timestamp,
                )
            seen.add(operation.id)

        self._session.add_all(self._to_orm(operation) for operation in operations)
        self._session.commit()
        return operations

    def get(self, operation_id: str) -> Operation | None:
        orm_operation = self._session.scalars(
            select(models.OperationOrm).where(models.OperationOrm.id == operation_id)
        ).one_or_none()
        if orm_operation is None:
            return None
        return self._to_domain(orm_operation)

    def list(self) -> list[Operation]:
        """Stored operations ordered by timestamp, then by insertion."""
        orm_operations = self._session.scalars(
            select(models.OperationOrm).order_by(models.OperationOrm.position.asc())
        ).all()
        # ISO strings with different offsets do not sort chronologically, so order in Python.
        ordered = sorted(orm_operations, key=lambda orm: (orm.timestamp, orm.position))
        return [self._to_domain(orm_operation) for orm_operation in ordered]

    @staticmethod
    def _to_orm(operation: Operation) -> models.OperationOrm:
        selection = None
        if operation.parcel_selection is not None:
            selection = [
                {"parcel_id": choice.parcel_id, "quantity": str(choice.quantity)} for choice in operation.parcel_selection
            ]
        return models.OperationOrm(
            id=operation.id,
            kind=operation.kind.value,
            account_id=operation.account_id,
            asset_id=operation.asset_id,
            quantity=operation.quantity,
            unit_price=operation.unit_price,
            currency=operation.currency,
            timestamp=operation.timestamp,
            transaction_id=operation.transaction_id,
            fee=operation.fee,
            asset_kind=operation.asset_kind.value if operation.asset_kind else None,
            label=operation.label.value if operation.label else None,
            identification_method=operation.identification_method.value if operation.identification_method else None,
            parcel_selection=selection,
        )

    @staticmethod
    def _to_domain(orm_operation: models.OperationOrm) -> Operation:
        selection = None
        if orm_operation.parcel_selection is not None:
            selection = tuple(
                ParcelSelection(parcel_id=choice["parcel_id"], quantity=choice["quantity"])
                for choice in orm_operation.parcel_selection
            )
        return Operation.model_validate(
            {
                "id": orm_operation.id,
                "kind": orm_operation.kind,
                "account_id": orm_operation.account_id,
                "asset_id": orm_operation.asset_id,
                "quantity": orm_operation.quantity,
                "unit_price": orm_operation.unit_price,
                "currency": orm_operation.currency,
                "timestamp": orm_operation.timestamp,
                "transaction_id": orm_operation.transaction_id,
                "fee": orm_operation.fee,
                "asset_kind": orm_operation.asset_kind,
                "label": orm_operation.label,
                "identification_method": orm_operation.identification_method,
                "parcel_selection": selection,
            }
        )


class ParcelRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def replace_all(self, parcels: Iterable[Parcel]) -> None:
        self._session.execute(delete(models.ParcelOrm))
        self._session.add_all(
            models.ParcelOrm(
                id=parcel.id,
                account_id=parcel.account_id,
                asset_id=parcel.asset_id,
                original_quantity=parcel.original_quantity,
                remaining_quantity=parcel.remaining_quantity,
                acquired_at=parcel.acquired_at,
                cost_basis=parcel.cost_basis,
                cost_currency=parcel.cost_currency,
                source_operation_id=parcel.source_operation_id,
                sequence=parcel.sequence,
            )
            for parcel in parcels
        )
        self._session.commit()

    def list(self) -> list[Parcel]:
        orm_parcels = self._session.scalars(
            select(models.ParcelOrm).order_by(
                models.ParcelOrm.account_id, models.ParcelOrm.asset_id, models.ParcelOrm.sequence
            )
        ).all()
        return [
            Parcel(
                id=orm.id,
                account_id=orm.account_id,
                asset_id=orm.asset_id,
                original_quantity=orm.original_quantity,
                remaining_quantity=orm.remaining_quantity,
                acquired_at=orm.acquired_at,
                cost_basis=orm.cost_basis,
                cost_currency=orm.cost_currency,
                source_operation_id=orm.source_operation_id,
                sequence=orm.sequence,
            )
            for orm in orm_parcels
        ]


class MatchRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def replace_all(self, matches: Iterable[Match]) -> None:
        self._session.execute(delete(models.MatchedParcelOrm))
        self._session.execute(delete(models.MatchOrm))
        for match in matches:
            orm_match = models.MatchOrm(
                id=match.id,
                disposal_operation_id=match.disposal_operation_id,
                account_id=match.account_id,
                asset_id=match.asset_id,
                method=match.method.value,
                disposed_at=match.disposed_at,
                quantity=match.quantity,
            )
            orm_match.parcels = [
                models.MatchedParcelOrm(
                    position=position,
                    parcel_id=matched.parcel_id,
                    quantity=matched.quantity,
                    cost_basis=matched.cost_basis,
                    holding_start=matched.holding_start,
                )
                for position, matched in enumerate(match.parcels)
            ]
            self._session.add(orm_match)
        self._session.commit()

    def list(self) -> list[Match]:
        orm_matches = self._session.scalars(select(models.MatchOrm)).unique().all()
        matches = [
            Match(
                id=orm.id,
                disposal_operation_id=orm.disposal_operation_id,
                account_id=orm.account_id,
                asset_id=orm.asset_id,
                method=orm.method,
                disposed_at=orm.disposed_at,
                quantity=orm.quantity,
                parcels=tuple(
                    MatchedParcel(
                        parcel_id=parcel.parcel_id,
                        quantity=parcel.quantity,
                        cost_basis=parcel.cost_basis,
                        holding_start=parcel.holding_start,
                    )
                    for parcel in orm.parcels
                ),
            )
            for orm in orm_matches
        ]
        return sorted(matches, key=lambda match: (match.disposed_at, match.account_id, match.asset_id, match.id))


class TaxableEventRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def replace_all(self, events: Iterable[TaxableEvent]) -> None:
        self._session.execute(delete(models.TaxableEventOrm))
        self._session.add_all(
            models.TaxableEventOrm(
                id=event.id,
                classification=event.classification.value,
                amount=event.amount,
                currency=event.currency,
                discount_eligible=event.discount_eligible,
                financial_year=event.financial_year,
                occurred_at=event.occurred_at,
                account_id=event.account_id,
                asset_id=event.asset_id,
                operation_ids=list(event.operation_ids),
                parcel_ids=list(event.parcel_ids),
                match_id=event.match_id,
                quantity=event.quantity,
                proceeds=event.proceeds,
                cost_basis=event.cost_basis,
                label=event.label.value if event.label else None,
                position=position,
            )
            for position, event in enumerate(events)
        )
        self._session.commit()

    def list(self) -> list[TaxableEvent]:
        orm_events = self._session.scalars(
            select(models.TaxableEventOrm).order_by(models.TaxableEventOrm.position.asc())
        ).all()
        return [
            TaxableEvent(
                id=orm.id,
                classification=orm.classification,
                amount=orm.amount,
                currency=orm.currency,
                discount_eligible=orm.discount_eligible,
                financial_year=orm.financial_year,
                occurred_at=orm.occurred_at,
                account_id=orm.account_id,
                asset_id=orm.asset_id,
                operation_ids=tuple(orm.operation_ids),
                parcel_ids=tuple(orm.parcel_ids),
                match_id=orm.match_id,
                quantity=orm.quantity,
                proceeds=orm.proceeds,
                cost_basis=orm.cost_basis,
                label=orm.label,
            )
            for orm in orm_events
        ]


__all__ = ["MatchRepository", "OperationRepository", "ParcelRepository", "TaxableEventRepository"]
