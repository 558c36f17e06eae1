"""
schemas/expense_schema.py — Marshmallow schemas for the expense endpoints.

This file is the boundary-translation layer between the wire format and the
engine's vocabulary:

  wire (camelCase)           engine (snake_case)
  ─────────────────────────  ──────────────────────────────
  restaurantName             restaurant_name
  serviceCharge (or `tip`)   service_charge
  isFinished / finished      is_finished     (responses send `finished`)
  claimedBy                  claimants
  quantity / totalQuantity   quantity_index / total_quantity
  subtotal (person)          items_subtotal
  totalOwed / amountOwed     total_owed

Validation responsibility:
  - This file: field types, non-blank names, monetary precision (max 2 dp)
    and sign, quantity ranges, request-shape rules.
  - engine/operations.py: anything that needs the current expense (item and
    participant lookup, claim resolution).

Request schemas ignore unknown keys: older clients send derived fields such
as totalAmount and subtotal, which are never settable.

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
           See extensions.py for the full explanation.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import (
    EXCLUDE,
    Schema,
    ValidationError,
    fields,
    post_load,
    validate,
    validates_schema,
)

from backend.forkthebill.errors import ErrorCode


# ── Shared validators ──────────────────────────────────────────────────────

def _validate_monetary_amount(value: Decimal) -> None:
    """
    Non-negative, at most 2 decimal places. Over-precise input is rejected
    with INVALID_AMOUNT_PRECISION, never rounded.
    """
    if value < Decimal("0"):
        raise ValidationError(ErrorCode.INVALID_AMOUNT)
    if value.as_tuple().exponent < -2:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_non_empty_after_trim(value: str) -> None:
    """validate.Length(min=1) alone accepts whitespace-only strings like "   "."""
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


def _money(**kwargs) -> fields.Decimal:
    return fields.Decimal(
        validate=_validate_monetary_amount,
        allow_nan=False,
        error_messages={
            "invalid": ErrorCode.INVALID_AMOUNT,
            "special": ErrorCode.INVALID_AMOUNT,
        },
        **kwargs,
    )


def _name(**kwargs) -> fields.Str:
    return fields.Str(
        validate=[
            validate.Length(
                min=1,
                max=255,
                error="Name must be between 1 and 255 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
        **kwargs,
    )


def _quantity(**kwargs) -> fields.Int:
    return fields.Int(
        strict=True,
        validate=validate.Range(min=1, error=ErrorCode.INVALID_QUANTITY),
        **kwargs,
    )


def _merge_finished_flag(data: dict) -> dict:
    """Requests may carry `isFinished` (UI model) or `finished` (wire model)."""
    wire_flag = data.pop("finished", None)
    if "is_finished" not in data and wire_flag is not None:
        data["is_finished"] = wire_flag
    return data


def _validate_unique_people(people: list) -> None:
    names = [person["name"] for person in people]
    if len(names) != len(set(names)):
        raise ValidationError({"people": [ErrorCode.DUPLICATE_PARTICIPANT]})


def _merge_tip(data: dict) -> dict:
    """`tip` is the historical name of serviceCharge."""
    tip = data.pop("tip", None)
    if data.get("service_charge") is None and tip is not None:
        data["service_charge"] = tip
    return data


class _RequestSchema(Schema):

    class Meta:
        unknown = EXCLUDE


# ── Request sub-schemas ────────────────────────────────────────────────────

class ItemInputSchema(_RequestSchema):
    """
    One receipt line on create: `price` is the LINE TOTAL. A line with
    quantity 3 becomes three items priced price / 3.
    """

    name = _name(required=True)
    price = _money(required=True)
    quantity = _quantity(load_default=1)


class PersonInputSchema(_RequestSchema):

    name = _name(required=True)
    is_finished = fields.Bool(data_key="isFinished")
    finished = fields.Bool()

    @post_load
    def merge_flags(self, data: dict, **kwargs) -> dict:
        return _merge_finished_flag(data)


class ReplaceItemInputSchema(_RequestSchema):
    """
    One item on PUT: `price` is this UNIT's price, `quantity` its index in
    the group and `totalQuantity` the group size. No splitting happens.
    Omitted grouping fields keep the stored item's values.
    """

    id = fields.Str(load_default=None)
    name = _name(required=True)
    price = _money(required=True)
    quantity = _quantity(load_default=None)
    total_quantity = _quantity(data_key="totalQuantity", load_default=None)
    claimed_by = fields.List(
        fields.Str(validate=_validate_non_empty_after_trim),
        data_key="claimedBy",
        load_default=None,
    )

    @validates_schema
    def validate_quantity_index(self, data: dict, **kwargs) -> None:
        quantity, total = data.get("quantity"), data.get("total_quantity")
        if quantity is not None and total is not None and quantity > total:
            raise ValidationError({"quantity": [ErrorCode.INVALID_QUANTITY]})


# ── Create / replace ───────────────────────────────────────────────────────

class CreateExpenseSchema(_RequestSchema):
    """POST /expense"""

    payer_name = _name(data_key="payerName", required=True)
    restaurant_name = fields.Str(
        data_key="restaurantName",
        load_default="",
        validate=validate.Length(max=255),
    )
    items = fields.List(fields.Nested(ItemInputSchema), load_default=list)
    tax = _money(load_default=Decimal("0"))
    service_charge = _money(data_key="serviceCharge", load_default=None)
    tip = _money(load_default=None)
    discount = _money(load_default=Decimal("0"))
    people = fields.List(fields.Nested(PersonInputSchema), load_default=list)

    @validates_schema
    def validate_people(self, data: dict, **kwargs) -> None:
        _validate_unique_people(data.get("people", []))

    @post_load
    def resolve_service_charge(self, data: dict, **kwargs) -> dict:
        data = _merge_tip(data)
        if data.get("service_charge") is None:
            data["service_charge"] = Decimal("0")
        return data


class ReplaceExpenseSchema(_RequestSchema):
    """
    PUT /expense/:slug — every field optional; absent fields keep their value.

    `items`, when present, is the complete new item list.
    """

    payer_name = _name(data_key="payerName")
    restaurant_name = fields.Str(
        data_key="restaurantName",
        validate=validate.Length(max=255),
    )
    items = fields.List(fields.Nested(ReplaceItemInputSchema))
    tax = _money()
    service_charge = _money(data_key="serviceCharge")
    tip = _money()
    discount = _money()
    people = fields.List(fields.Nested(PersonInputSchema), load_default=list)

    @validates_schema
    def validate_people(self, data: dict, **kwargs) -> None:
        _validate_unique_people(data.get("people", []))

    @post_load
    def resolve_service_charge(self, data: dict, **kwargs) -> dict:
        return _merge_tip(data)


class ParsedReceiptSchema(_RequestSchema):
    """Structured output of a ReceiptParser. See services/receipt_service.py."""

    restaurant_name = fields.Str(data_key="restaurantName", load_default="")
    items = fields.List(
        fields.Nested(ItemInputSchema),
        required=True,
        validate=validate.Length(min=1, error="A receipt must have at least one item."),
    )
    tax = _money(load_default=Decimal("0"))
    service_charge = _money(data_key="serviceCharge", load_default=None)
    tip = _money(load_default=None)
    discount = _money(load_default=Decimal("0"))

    @post_load
    def resolve_service_charge(self, data: dict, **kwargs) -> dict:
        data = _merge_tip(data)
        if data.get("service_charge") is None:
            data["service_charge"] = Decimal("0")
        return data


# ── Single-operation requests ──────────────────────────────────────────────

class AddItemSchema(_RequestSchema):
    """POST /expense/:slug/items — `price` is accepted as an alias of totalPrice."""

    name = _name(required=True)
    total_price = _money(data_key="totalPrice")
    price = _money()
    quantity = _quantity(load_default=1)

    @validates_schema
    def validate_price_present(self, data: dict, **kwargs) -> None:
        if data.get("total_price") is None and data.get("price") is None:
            raise ValidationError(
                {"totalPrice": ["Missing data for required field."]}
            )

    @post_load
    def resolve_price(self, data: dict, **kwargs) -> dict:
        price = data.pop("price", None)
        if data.get("total_price") is None:
            data["total_price"] = price
        return data


class AdjustmentsSchema(_RequestSchema):
    """PATCH /expense/:slug/adjustments — omitted fields keep their value."""

    tax = _money()
    service_charge = _money(data_key="serviceCharge")
    tip = _money()
    discount = _money()

    @post_load
    def resolve_service_charge(self, data: dict, **kwargs) -> dict:
        return _merge_tip(data)


class ClaimItemSchema(_RequestSchema):
    """
    POST /expense/:slug/items/:itemId/claim

    participantId (or the older personId) is an existing participant's id or
    a display name; participantName is always a display name.
    """

    participant_id = fields.Str(data_key="participantId")
    person_id = fields.Str(data_key="personId")
    participant_name = _name(data_key="participantName")

    @validates_schema
    def validate_reference_present(self, data: dict, **kwargs) -> None:
        if not any(
            data.get(key) for key in ("participant_id", "person_id", "participant_name")
        ):
            raise ValidationError(
                {"participantId": ["Missing data for required field."]}
            )

    @post_load
    def resolve_reference(self, data: dict, **kwargs) -> dict:
        return {
            "participant_ref": (
                data.get("participant_id")
                or data.get("person_id")
                or data.get("participant_name")
            ),
        }


class UploadReceiptSchema(_RequestSchema):
    """Form fields of POST /expense/upload. The file itself arrives as `bill`."""

    payer_name = _name(data_key="payerName", required=True)


class AddParticipantSchema(_RequestSchema):
    """POST /expense/:slug/people"""

    name = _name(required=True)
    is_finished = fields.Bool(data_key="isFinished")
    finished = fields.Bool()

    @post_load
    def merge_flags(self, data: dict, **kwargs) -> dict:
        return _merge_finished_flag(data)


# ── Response schemas ───────────────────────────────────────────────────────
# Dumped from engine values. Amounts are strings with two places, never
# JSON numbers.

def _amount(**kwargs) -> fields.Decimal:
    return fields.Decimal(places=2, as_string=True, **kwargs)


class ItemResponseSchema(Schema):
    id = fields.Str()
    name = fields.Str()
    price = _amount()
    quantity = fields.Int(attribute="quantity_index")
    total_quantity = fields.Int(data_key="totalQuantity")
    claimed_by = fields.List(fields.Str(), attribute="claimants", data_key="claimedBy")


class PersonResponseSchema(Schema):
    id = fields.Str()
    name = fields.Str()
    items_claimed = fields.List(fields.Str(), data_key="itemsClaimed")
    subtotal = _amount(attribute="items_subtotal")
    tax_share = _amount(data_key="taxShare")
    service_charge_share = _amount(data_key="serviceChargeShare")
    discount_share = _amount(data_key="discountShare")
    total_owed = _amount(data_key="totalOwed")
    amount_owed = _amount(attribute="total_owed", data_key="amountOwed", dump_only=True)
    finished = fields.Bool(attribute="is_finished")


class ExpenseResponseSchema(Schema):
    id = fields.Str()
    slug = fields.Str()
    restaurant_name = fields.Str(data_key="restaurantName")
    payer_name = fields.Str(data_key="payerName")
    created_at = fields.DateTime(data_key="createdAt")
    subtotal = _amount()
    tax = _amount()
    service_charge = _amount(data_key="serviceCharge")
    discount = _amount()
    total_amount = _amount(data_key="totalAmount")
    items = fields.List(fields.Nested(ItemResponseSchema))
    people = fields.List(fields.Nested(PersonResponseSchema), attribute="participants")
