"""
Catalogue models the subscription engine reads.

Workspaces, customers, networks, tokens, wallets, products and prices are
provisioned elsewhere (dashboard, API, or projected from a payment
processor by the sync layer). The subscription engine only reads them,
except for the processor projection which upserts customers, products and
prices keyed by (workspace, external_id, payment_provider).

Usage:
    from billing.models import Price, ProductToken

    price = Price.objects.select_related("product__wallet").get(pk=price_id)
    pair = ProductToken.objects.get(product=price.product, token=token)
"""

from __future__ import annotations

from django.db import models

from core.managers import SoftDeleteManager
from core.model_mixins import MetadataMixin, SoftDeleteMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

from billing.state_machines import IntervalType, PaymentSyncStatus, PriceType


class ProcessorSyncFields(models.Model):
    """
    Columns shared by entities that may be mirrored from a payment processor.

    external_id is null for locally created rows.
    """

    external_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Identifier of this entity at the payment processor",
    )

    payment_provider = models.CharField(
        max_length=50,
        blank=True,
        default="",
        help_text="Payment processor owning external_id (e.g., 'stripe')",
    )

    payment_sync_status = models.CharField(
        max_length=20,
        choices=PaymentSyncStatus.choices,
        default=PaymentSyncStatus.PENDING,
        help_text="Whether this row matches the processor's copy",
    )

    payment_synced_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the processor's copy was last applied",
    )

    class Meta:
        abstract = True


# =============================================================================
# Tenancy
# =============================================================================


class Workspace(UUIDPrimaryKeyMixin, BaseModel):
    """A merchant tenant. Every billing row belongs to exactly one."""

    name = models.CharField(max_length=255, help_text="Display name")
    is_active = models.BooleanField(default=True, help_text="Whether the workspace can bill")

    class Meta:
        ordering = ["name"]
        verbose_name = "Workspace"
        verbose_name_plural = "Workspaces"

    def __str__(self) -> str:
        return self.name


class Customer(UUIDPrimaryKeyMixin, SoftDeleteMixin, MetadataMixin, ProcessorSyncFields, BaseModel):
    """
    A paying customer of a workspace.

    Customers created by the processor projection are unique per
    (workspace, external_id, payment_provider) among non-deleted rows.
    """

    workspace = models.ForeignKey(
        Workspace,
        on_delete=models.PROTECT,
        related_name="customers",
        help_text="Workspace this customer belongs to",
    )

    email = models.EmailField(blank=True, default="", help_text="Billing email address")
    name = models.CharField(max_length=255, blank=True, default="", help_text="Customer name")

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Customer"
        verbose_name_plural = "Customers"
        constraints = [
            models.UniqueConstraint(
                fields=["workspace", "external_id", "payment_provider"],
                condition=models.Q(is_deleted=False, external_id__isnull=False),
                name="customer_unique_external_id",
            ),
        ]

    def __str__(self) -> str:
        return self.email or str(self.pk)


# =============================================================================
# Chain
# =============================================================================


class Network(UUIDPrimaryKeyMixin, BaseModel):
    """An EVM network redemptions are submitted to."""

    name = models.CharField(max_length=100, help_text="Network name (e.g., 'Base')")
    chain_id = models.PositiveBigIntegerField(unique=True, help_text="EIP-155 chain id")
    is_active = models.BooleanField(default=True, help_text="Whether redemptions may target this network")

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return f"{self.name} ({self.chain_id})"


class Token(UUIDPrimaryKeyMixin, BaseModel):
    """An ERC-20 asset on one network."""

    network = models.ForeignKey(
        Network,
        on_delete=models.PROTECT,
        related_name="tokens",
        help_text="Network the token contract lives on",
    )
    symbol = models.CharField(max_length=20, help_text="Ticker symbol (e.g., 'USDC')")
    contract_address = models.CharField(max_length=42, help_text="Checksummed contract address")
    decimals = models.PositiveSmallIntegerField(default=6, help_text="Token decimals")
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["symbol"]
        constraints = [
            models.UniqueConstraint(
                fields=["network", "contract_address"],
                name="token_unique_contract_per_network",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.symbol} on {self.network_id}"


class Wallet(UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
    """
    A blockchain address known to a workspace.

    Merchant wallets (is_merchant=True) receive redemptions; customer
    wallets are the delegators.
    """

    workspace = models.ForeignKey(
        Workspace,
        on_delete=models.PROTECT,
        related_name="wallets",
        help_text="Workspace this wallet belongs to",
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="wallets",
        help_text="Owning customer, null for merchant wallets",
    )
    network = models.ForeignKey(
        Network,
        on_delete=models.PROTECT,
        related_name="wallets",
        help_text="Network the address is used on",
    )
    address = models.CharField(max_length=42, db_index=True, help_text="Wallet address")
    is_merchant = models.BooleanField(default=False, help_text="Whether this wallet receives redemptions")

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["workspace", "network", "address"],
                name="wallet_unique_address_per_network",
            ),
        ]

    def __str__(self) -> str:
        return self.address


# =============================================================================
# Products & Prices
# =============================================================================


class Product(UUIDPrimaryKeyMixin, SoftDeleteMixin, MetadataMixin, ProcessorSyncFields, BaseModel):
    """Something a workspace sells. Its merchant wallet receives redemptions."""

    workspace = models.ForeignKey(
        Workspace,
        on_delete=models.PROTECT,
        related_name="products",
        help_text="Workspace selling this product",
    )
    wallet = models.ForeignKey(
        Wallet,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="products",
        help_text="Merchant wallet receiving redemptions (null for processor-only products)",
    )
    name = models.CharField(max_length=255, help_text="Product name")
    description = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=True, help_text="Whether new subscriptions are accepted")

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["workspace", "external_id", "payment_provider"],
                condition=models.Q(is_deleted=False, external_id__isnull=False),
                name="product_unique_external_id",
            ),
        ]

    def __str__(self) -> str:
        return self.name


class Price(UUIDPrimaryKeyMixin, MetadataMixin, ProcessorSyncFields, BaseModel):
    """
    A price point of a product.

    Recurring prices carry an interval_type; one-time prices must not.
    term_length is the number of periods after which a subscription
    completes; null means open-ended.
    """

    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name="prices",
        help_text="Product this price belongs to",
    )
    price_type = models.CharField(
        max_length=20,
        choices=PriceType.choices,
        default=PriceType.RECURRING,
        help_text="Recurring or one-time",
    )
    currency = models.CharField(max_length=3, default="USD", help_text="ISO 4217 currency code")
    unit_amount_in_pennies = models.PositiveBigIntegerField(
        help_text="Amount per period in the currency's smallest unit",
    )
    interval_type = models.CharField(
        max_length=10,
        choices=IntervalType.choices,
        null=True,
        blank=True,
        help_text="Billing interval for recurring prices",
    )
    term_length = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Number of periods until completion (null = open-ended)",
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(price_type=PriceType.RECURRING, interval_type__isnull=False)
                    | models.Q(price_type=PriceType.ONE_TIME, interval_type__isnull=True)
                ),
                name="price_interval_matches_type",
            ),
            models.UniqueConstraint(
                fields=["product", "external_id", "payment_provider"],
                condition=models.Q(external_id__isnull=False),
                name="price_unique_external_id",
            ),
        ]

    def __str__(self) -> str:
        interval = f"/{self.interval_type}" if self.interval_type else ""
        return f"{self.unit_amount_in_pennies / 100:.2f} {self.currency}{interval}"

    @property
    def is_recurring(self) -> bool:
        return self.price_type == PriceType.RECURRING


class ProductToken(UUIDPrimaryKeyMixin, BaseModel):
    """An asset+network pair a product accepts payment in."""

    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name="product_tokens",
    )
    token = models.ForeignKey(
        Token,
        on_delete=models.PROTECT,
        related_name="product_tokens",
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["product", "token"], name="product_token_unique"),
        ]

    def __str__(self) -> str:
        return f"{self.product_id}:{self.token_id}"
