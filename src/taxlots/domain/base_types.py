from __future__ import annotations

from typing import NewType

AccountId = NewType("AccountId", str)
AssetId = NewType("AssetId", str)
CurrencyCode = NewType("CurrencyCode", str)
OperationId = NewType("OperationId", str)
TransactionId = NewType("TransactionId", str)
ParcelId = NewType("ParcelId", str)
MatchId = NewType("MatchId", str)
TaxableEventId = NewType("TaxableEventId", str)

PartitionKey = tuple[AccountId, AssetId]
