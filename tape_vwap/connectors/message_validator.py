"""
Message Validator for raw feed records.

Validates every record arriving from the feed session before it reaches
the gap detector:
1. Required fields are present
2. Types are correct
3. Values are within reasonable ranges
4. Timestamps are parseable and normalised to UTC
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping

from ..core.constants import CorrectionAction, Provenance, RecordKind
from ..core.exceptions import DataValidationError
from ..core.types import Correction, MarketEvent, Tick


logger = logging.getLogger(__name__)


class FeedMessageValidator:
    """Validates and normalises raw feed messages into ticks and corrections."""

    # Reasonable limits for validation
    MAX_PRICE = Decimal("10000000")  # Maximum reasonable price
    MAX_VOLUME = 1_000_000_000  # Maximum single-print quantity
    MAX_STRING_LENGTH = 64  # Maximum instrument / venue / condition length

    @staticmethod
    def parse(data: Mapping[str, Any]) -> MarketEvent:
        """
        Validate a raw message and build the matching record.

        A message is a correction when ``kind == "correction"`` or when it
        carries a ``ref_seq``; otherwise it is a tick.

        Raises:
            DataValidationError if invalid
        """
        if not isinstance(data, Mapping):
            raise DataValidationError(
                f"Feed message must be a mapping, got {type(data).__name__}",
                data_type="message"
            )
        kind = data.get('kind')
        if kind == RecordKind.CORRECTION.value or (kind is None and 'ref_seq' in data):
            return FeedMessageValidator.validate_correction(data)
        return FeedMessageValidator.validate_tick(data)

    @staticmethod
    def validate_tick(data: Mapping[str, Any]) -> Tick:
        """
        Validate a raw trade print.

        Args:
            data: Raw message from the feed

        Returns:
            Tick

        Raises:
            DataValidationError if invalid
        """
        logger.debug("Validating tick: %s", data)
        FeedMessageValidator._require(data, ['price', 'volume', 'venue'], "tick")

        instrument = FeedMessageValidator._instrument(data, "tick")
        seq = FeedMessageValidator._sequence(data, "tick")
        price = FeedMessageValidator._price(data['price'], "price", "tick")

        try:
            volume = int(data['volume'])
            if Decimal(str(data['volume'])) != volume:
                raise ValueError("fractional volume")
        except (ValueError, TypeError, InvalidOperation) as e:
            raise DataValidationError(
                f"Invalid volume value: {data['volume']}",
                data_type="tick",
                field="volume",
                error=str(e)
            )
        if volume < 0:
            raise DataValidationError(
                f"Volume cannot be negative: {volume}",
                data_type="tick",
                field="volume"
            )
        if volume > FeedMessageValidator.MAX_VOLUME:
            logger.warning("Suspiciously large print: %s volume=%d", instrument, volume)

        venue = str(data['venue']).strip()
        if not venue or len(venue) > FeedMessageValidator.MAX_STRING_LENGTH:
            raise DataValidationError(
                f"Invalid venue: {venue!r}",
                data_type="tick",
                field="venue"
            )

        return Tick(
            instrument=instrument,
            price=price,
            volume=volume,
            venue=venue,
            seq=seq,
            event_time=FeedMessageValidator._event_time(data, "tick"),
            conditions=FeedMessageValidator._conditions(data.get('conditions')),
            provenance=FeedMessageValidator._provenance(data, "tick")
        )

    @staticmethod
    def validate_correction(data: Mapping[str, Any]) -> Correction:
        """
        Validate a raw cancel / amend message.

        Raises:
            DataValidationError if invalid
        """
        logger.debug("Validating correction: %s", data)
        FeedMessageValidator._require(data, ['ref_seq', 'action'], "correction")

        instrument = FeedMessageValidator._instrument(data, "correction")
        seq = FeedMessageValidator._sequence(data, "correction")

        try:
            action = CorrectionAction(str(data['action']).strip().lower())
            ref_seq = int(data['ref_seq'])
        except (ValueError, TypeError) as e:
            raise DataValidationError(
                f"Invalid correction reference: {e}",
                data_type="correction",
                action=data.get('action'),
                ref_seq=data.get('ref_seq')
            )

        new_price = None
        new_volume = None
        if action == CorrectionAction.AMEND:
            FeedMessageValidator._require(data, ['new_price', 'new_volume'], "correction")
            new_price = FeedMessageValidator._price(data['new_price'], "new_price", "correction")
            try:
                new_volume = int(data['new_volume'])
                if Decimal(str(data['new_volume'])) != new_volume:
                    raise ValueError("fractional volume")
            except (ValueError, TypeError, InvalidOperation) as e:
                raise DataValidationError(
                    f"Invalid new_volume value: {data['new_volume']}",
                    data_type="correction",
                    field="new_volume",
                    error=str(e)
                )

        return Correction(
            instrument=instrument,
            seq=seq,
            ref_seq=ref_seq,
            action=action,
            event_time=FeedMessageValidator._event_time(data, "correction"),
            new_price=new_price,
            new_volume=new_volume,
            provenance=FeedMessageValidator._provenance(data, "correction")
        )

    # ------------------------------------------------------------------
    # Field helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require(data: Mapping[str, Any], fields: list, data_type: str) -> None:
        for field in fields:
            if field not in data or data[field] is None:
                raise DataValidationError(
                    f"Missing required field: {field}",
                    data_type=data_type,
                    received_fields=list(data.keys())
                )

    @staticmethod
    def _instrument(data: Mapping[str, Any], data_type: str) -> str:
        instrument = data.get('instrument', data.get('symbol'))
        if instrument is None:
            raise DataValidationError(
                "Missing required field: instrument",
                data_type=data_type,
                received_fields=list(data.keys())
            )
        instrument = str(instrument).strip()
        if not instrument or len(instrument) > FeedMessageValidator.MAX_STRING_LENGTH:
            raise DataValidationError(
                f"Invalid instrument: {instrument!r}",
                data_type=data_type
            )
        return instrument

    @staticmethod
    def _sequence(data: Mapping[str, Any], data_type: str) -> int:
        raw = data.get('seq', data.get('sequence'))
        if raw is None or isinstance(raw, bool):
            raise DataValidationError(
                "Missing required field: seq",
                data_type=data_type,
                received_fields=list(data.keys())
            )
        try:
            seq = int(raw)
        except (ValueError, TypeError) as e:
            raise DataValidationError(
                f"Invalid sequence number: {raw}",
                data_type=data_type,
                error=str(e)
            )
        if seq < 0:
            raise DataValidationError(
                f"Sequence number cannot be negative: {seq}",
                data_type=data_type
            )
        return seq

    @staticmethod
    def _price(raw: Any, field: str, data_type: str) -> Decimal:
        try:
            # str() first so floats do not leak binary noise into the Decimal
            price = Decimal(str(raw).strip())
        except (InvalidOperation, ValueError) as e:
            raise DataValidationError(
                f"Invalid {field} value: {raw} (type: {type(raw)})",
                data_type=data_type,
                field=field,
                error=str(e)
            )
        if not price.is_finite() or price <= 0:
            raise DataValidationError(
                f"{field} must be positive: {raw}",
                data_type=data_type,
                field=field
            )
        if price > FeedMessageValidator.MAX_PRICE:
            raise DataValidationError(
                f"{field} out of range: {raw}",
                data_type=data_type,
                field=field
            )
        return price

    @staticmethod
    def _event_time(data: Mapping[str, Any], data_type: str) -> datetime:
        raw = data.get('event_time', data.get('timestamp'))
        if raw is None:
            raise DataValidationError(
                "Missing required field: event_time",
                data_type=data_type,
                received_fields=list(data.keys())
            )
        if isinstance(raw, datetime):
            return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
        if isinstance(raw, bool):
            raise DataValidationError("Invalid event_time type: bool", data_type=data_type)
        if isinstance(raw, (int, float)):
            # Heuristic: seconds are ~1e9, milliseconds are ~1e12
            seconds = float(raw) / 1000.0 if float(raw) >= 10_000_000_000 else float(raw)
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        try:
            parsed = datetime.fromisoformat(str(raw).strip().replace('Z', '+00:00'))
        except ValueError as e:
            raise DataValidationError(
                f"Invalid event_time: {raw!r}",
                data_type=data_type,
                error=str(e)
            )
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    @staticmethod
    def _conditions(raw: Any) -> frozenset:
        if raw is None or raw == "":
            return frozenset()
        if isinstance(raw, str):
            raw = raw.replace(';', ',').split(',')
        conditions = set()
        for item in raw:
            code = str(item).strip().upper()
            if not code:
                continue
            if len(code) > FeedMessageValidator.MAX_STRING_LENGTH:
                raise DataValidationError(
                    f"Trade condition too long: {len(code)} chars",
                    data_type="tick"
                )
            conditions.add(code)
        return frozenset(conditions)

    @staticmethod
    def _provenance(data: Mapping[str, Any], data_type: str) -> Provenance:
        raw = data.get('provenance', Provenance.LIVE.value)
        try:
            return Provenance(str(raw).strip().lower())
        except ValueError:
            raise DataValidationError(
                f"Unknown provenance: {raw!r}",
                data_type=data_type
            )
