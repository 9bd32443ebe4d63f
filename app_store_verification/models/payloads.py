# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Typed shapes for decoded App Store signed payloads.

Only the identity and trust fields plus a handful of commonly used claims
are modelled.  Unknown claims are ignored.  Environment-typed fields hold
an :class:`Environment` member for known values and the raw string for
anything newer, so a verifier never rejects a payload merely because
Apple introduced a new environment name.

Claim types are strict: JSON numbers are never coerced to strings, booleans
never pass as integers, and timestamps must be finite.  A claim of the
wrong type fails with a ``verification_failure`` naming the wire field.
"""

from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import (
    AllowInfNan,
    BaseModel,
    ConfigDict,
    Field,
    Strict,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from app_store_verification.models.environment import Environment, raw_value
from app_store_verification.verification.exceptions import VerificationException

# Milliseconds since the Unix epoch.  Xcode payloads may carry fractions.
Timestamp = Union[StrictInt, Annotated[float, Strict(), AllowInfNan(False)]]
EnvironmentValue = Union[Environment, StrictStr]
Platform = Literal["iOS", "macOS", "tvOS", "visionOS"]

# pydantic error type -> wire type named in the failure message.
_ERROR_KINDS = {
    "int_type": "integer",
    "int_from_float": "integer",
    "float_type": "number",
    "finite_number": "number",
    "string_type": "string",
    "bool_type": "boolean",
    "list_type": "string list",
    "dict_type": "map",
    "model_type": "map",
    "model_attributes_type": "map",
    "greater_than_equal": "integer enum",
    "less_than_equal": "integer enum",
    "literal_error": "enum",
}


def _error_kind(error: Any) -> Optional[str]:
    loc = error["loc"]
    if len(loc) > 1 and isinstance(loc[1], int):
        return "string list"
    return _ERROR_KINDS.get(error["type"])


class AppStorePayload(BaseModel):
    """Base for decoded payloads: camelCase wire names, unknown claims ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @classmethod
    def from_payload(cls, payload: Any):
        """Validate a decoded claims dict and build the typed model.

        Raises:
            VerificationException: ``verification_failure`` when the payload
                is not an object or a claim has the wrong type.
        """
        if not isinstance(payload, dict):
            raise VerificationException.failure(f"Invalid {cls.__name__} payload")
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise VerificationException.failure(cls._describe(exc)) from exc

    @classmethod
    def _describe(cls, exc: ValidationError) -> str:
        errors = exc.errors()
        required = [f.alias or n for n, f in cls.model_fields.items() if f.is_required()]
        if any(err["loc"][0] in required for err in errors):
            return f"Missing or invalid: {', '.join(required)}"

        # Union members report one error each; all of them name the same claim.
        key = errors[0]["loc"][0]
        kinds = [_error_kind(err) for err in errors if err["loc"][0] == key]
        if "number" in kinds:
            return f"Invalid number field: {key}"
        if "string" in kinds:
            return f"Invalid string field: {key}"
        for kind in kinds:
            if kind is not None:
                return f"Invalid {kind} field: {key}"
        return f"Invalid {cls.__name__} payload: {key}"

    @field_validator("environment", "receipt_type", check_fields=False)
    @classmethod
    def normalize_environment(cls, value):
        """Known environment strings become :class:`Environment` members."""
        if value is None:
            return None
        return Environment.from_raw(value)


class JWSTransactionDecodedPayload(AppStorePayload):
    """A decoded signed transaction."""

    original_transaction_id: Optional[StrictStr] = Field(None, alias="originalTransactionId")
    transaction_id: Optional[StrictStr] = Field(None, alias="transactionId")
    web_order_line_item_id: Optional[StrictStr] = Field(None, alias="webOrderLineItemId")
    bundle_id: Optional[StrictStr] = Field(None, alias="bundleId")
    product_id: Optional[StrictStr] = Field(None, alias="productId")
    subscription_group_identifier: Optional[StrictStr] = Field(
        None, alias="subscriptionGroupIdentifier"
    )
    purchase_date: Optional[Timestamp] = Field(None, alias="purchaseDate")
    original_purchase_date: Optional[Timestamp] = Field(None, alias="originalPurchaseDate")
    expires_date: Optional[Timestamp] = Field(None, alias="expiresDate")
    quantity: Optional[StrictInt] = Field(None, alias="quantity")
    type: Optional[StrictStr] = Field(None, alias="type")
    app_account_token: Optional[StrictStr] = Field(None, alias="appAccountToken")
    in_app_ownership_type: Optional[StrictStr] = Field(None, alias="inAppOwnershipType")
    signed_date: Optional[Timestamp] = Field(None, alias="signedDate")
    revocation_reason: Optional[StrictInt] = Field(None, alias="revocationReason", ge=0, le=1)
    revocation_date: Optional[Timestamp] = Field(None, alias="revocationDate")
    is_upgraded: Optional[StrictBool] = Field(None, alias="isUpgraded")
    offer_type: Optional[StrictInt] = Field(None, alias="offerType", ge=1, le=4)
    offer_identifier: Optional[StrictStr] = Field(None, alias="offerIdentifier")
    environment: Optional[EnvironmentValue] = Field(None, alias="environment")
    storefront: Optional[StrictStr] = Field(None, alias="storefront")
    storefront_id: Optional[StrictStr] = Field(None, alias="storefrontId")
    transaction_reason: Optional[StrictStr] = Field(None, alias="transactionReason")
    currency: Optional[StrictStr] = Field(None, alias="currency")
    price: Optional[StrictInt] = Field(None, alias="price")
    app_transaction_id: Optional[StrictStr] = Field(None, alias="appTransactionId")

    @property
    def raw_environment(self) -> Optional[str]:
        return raw_value(self.environment)


class JWSRenewalInfoDecodedPayload(AppStorePayload):
    """Decoded subscription renewal information."""

    expiration_intent: Optional[StrictInt] = Field(None, alias="expirationIntent", ge=1, le=5)
    original_transaction_id: Optional[StrictStr] = Field(None, alias="originalTransactionId")
    auto_renew_product_id: Optional[StrictStr] = Field(None, alias="autoRenewProductId")
    product_id: Optional[StrictStr] = Field(None, alias="productId")
    auto_renew_status: Optional[StrictInt] = Field(None, alias="autoRenewStatus", ge=0, le=1)
    is_in_billing_retry_period: Optional[StrictBool] = Field(None, alias="isInBillingRetryPeriod")
    price_increase_status: Optional[StrictInt] = Field(
        None, alias="priceIncreaseStatus", ge=0, le=1
    )
    grace_period_expires_date: Optional[Timestamp] = Field(None, alias="gracePeriodExpiresDate")
    offer_type: Optional[StrictInt] = Field(None, alias="offerType", ge=1, le=4)
    offer_identifier: Optional[StrictStr] = Field(None, alias="offerIdentifier")
    signed_date: Optional[Timestamp] = Field(None, alias="signedDate")
    environment: Optional[EnvironmentValue] = Field(None, alias="environment")
    recent_subscription_start_date: Optional[Timestamp] = Field(
        None, alias="recentSubscriptionStartDate"
    )
    renewal_date: Optional[Timestamp] = Field(None, alias="renewalDate")
    currency: Optional[StrictStr] = Field(None, alias="currency")
    renewal_price: Optional[StrictInt] = Field(None, alias="renewalPrice")
    app_account_token: Optional[StrictStr] = Field(None, alias="appAccountToken")
    app_transaction_id: Optional[StrictStr] = Field(None, alias="appTransactionId")
    eligible_win_back_offer_ids: Optional[List[StrictStr]] = Field(
        None, alias="eligibleWinBackOfferIds"
    )

    @property
    def raw_environment(self) -> Optional[str]:
        return raw_value(self.environment)


class Data(AppStorePayload):
    """The ``data`` object of a server notification."""

    environment: Optional[EnvironmentValue] = Field(None, alias="environment")
    app_apple_id: Optional[StrictInt] = Field(None, alias="appAppleId")
    bundle_id: Optional[StrictStr] = Field(None, alias="bundleId")
    bundle_version: Optional[StrictStr] = Field(None, alias="bundleVersion")
    signed_transaction_info: Optional[StrictStr] = Field(None, alias="signedTransactionInfo")
    signed_renewal_info: Optional[StrictStr] = Field(None, alias="signedRenewalInfo")
    status: Optional[StrictInt] = Field(None, alias="status", ge=1, le=5)
    consumption_request_reason: Optional[StrictStr] = Field(None, alias="consumptionRequestReason")

    @property
    def raw_environment(self) -> Optional[str]:
        return raw_value(self.environment)


class Summary(AppStorePayload):
    """Summary of a subscription-renewal-date extension request."""

    environment: Optional[EnvironmentValue] = Field(None, alias="environment")
    app_apple_id: Optional[StrictInt] = Field(None, alias="appAppleId")
    bundle_id: Optional[StrictStr] = Field(None, alias="bundleId")
    product_id: Optional[StrictStr] = Field(None, alias="productId")
    request_identifier: Optional[StrictStr] = Field(None, alias="requestIdentifier")
    storefront_country_codes: Optional[List[StrictStr]] = Field(
        None, alias="storefrontCountryCodes"
    )
    succeeded_count: Optional[StrictInt] = Field(None, alias="succeededCount")
    failed_count: Optional[StrictInt] = Field(None, alias="failedCount")

    @property
    def raw_environment(self) -> Optional[str]:
        return raw_value(self.environment)


class ExternalPurchaseToken(AppStorePayload):
    """External purchase token carried by ``EXTERNAL_PURCHASE_TOKEN`` notifications."""

    external_purchase_id: Optional[StrictStr] = Field(None, alias="externalPurchaseId")
    token_creation_date: Optional[Timestamp] = Field(None, alias="tokenCreationDate")
    app_apple_id: Optional[StrictInt] = Field(None, alias="appAppleId")
    bundle_id: Optional[StrictStr] = Field(None, alias="bundleId")

    @property
    def environment(self) -> Environment:
        """Sandbox tokens are identified by their ``SANDBOX`` id prefix."""
        if self.external_purchase_id and self.external_purchase_id.startswith("SANDBOX"):
            return Environment.SANDBOX
        return Environment.PRODUCTION


class ResponseBodyV2DecodedPayload(AppStorePayload):
    """A decoded App Store Server Notification V2 body."""

    notification_type: StrictStr = Field(alias="notificationType")
    subtype: Optional[StrictStr] = Field(None, alias="subtype")
    notification_uuid: StrictStr = Field(alias="notificationUUID")
    data: Optional[Data] = Field(None, alias="data")
    version: Optional[StrictStr] = Field(None, alias="version")
    signed_date: Optional[Timestamp] = Field(None, alias="signedDate")
    summary: Optional[Summary] = Field(None, alias="summary")
    external_purchase_token: Optional[ExternalPurchaseToken] = Field(
        None, alias="externalPurchaseToken"
    )

    @classmethod
    def from_payload(cls, payload: Any):
        """Validate the body and each nested identity object."""
        if isinstance(payload, dict):
            for key, model in (
                ("data", Data),
                ("summary", Summary),
                ("externalPurchaseToken", ExternalPurchaseToken),
            ):
                nested = payload.get(key)
                if isinstance(nested, dict):
                    model.from_payload(nested)
        return super().from_payload(payload)


class AppTransaction(AppStorePayload):
    """A decoded signed app transaction.  ``receiptType`` is the environment."""

    receipt_type: Optional[EnvironmentValue] = Field(None, alias="receiptType")
    app_apple_id: Optional[StrictInt] = Field(None, alias="appAppleId")
    bundle_id: Optional[StrictStr] = Field(None, alias="bundleId")
    application_version: Optional[StrictStr] = Field(None, alias="applicationVersion")
    version_external_identifier: Optional[StrictInt] = Field(
        None, alias="versionExternalIdentifier"
    )
    receipt_creation_date: Optional[Timestamp] = Field(None, alias="receiptCreationDate")
    original_purchase_date: Optional[Timestamp] = Field(None, alias="originalPurchaseDate")
    original_application_version: Optional[StrictStr] = Field(
        None, alias="originalApplicationVersion"
    )
    device_verification: Optional[StrictStr] = Field(None, alias="deviceVerification")
    device_verification_nonce: Optional[StrictStr] = Field(None, alias="deviceVerificationNonce")
    preorder_date: Optional[Timestamp] = Field(None, alias="preorderDate")
    app_transaction_id: Optional[StrictStr] = Field(None, alias="appTransactionId")
    original_platform: Optional[Platform] = Field(None, alias="originalPlatform")

    @property
    def raw_receipt_type(self) -> Optional[str]:
        return raw_value(self.receipt_type)


class DecodedRealtimeRequestBody(AppStorePayload):
    """A decoded Retention Messaging realtime request."""

    original_transaction_id: Optional[StrictStr] = Field(None, alias="originalTransactionId")
    app_apple_id: Optional[StrictInt] = Field(None, alias="appAppleId")
    product_id: Optional[StrictStr] = Field(None, alias="productId")
    user_locale: Optional[StrictStr] = Field(None, alias="userLocale")
    request_identifier: Optional[StrictStr] = Field(None, alias="requestIdentifier")
    signed_date: Optional[Timestamp] = Field(None, alias="signedDate")
    environment: Optional[EnvironmentValue] = Field(None, alias="environment")

    @property
    def raw_environment(self) -> Optional[str]:
        return raw_value(self.environment)
