import django_filters as filters

from billing.models import Subscription


class SubscriptionFilter(filters.FilterSet):
    due_before = filters.IsoDateTimeFilter(field_name="next_redemption_date", lookup_expr="lte")
    created_after = filters.IsoDateTimeFilter(field_name="created_at", lookup_expr="gte")

    class Meta:
        model = Subscription
        fields = ["workspace", "customer", "product", "status", "due_before", "created_after"]
