import django_filters
from django.db.models import Q


class DocumentFilter(django_filters.FilterSet):
    """Filters shared by every line-item document list"""
    project = django_filters.NumberFilter(field_name='project_id')
    status = django_filters.CharFilter(field_name='status')
    search = django_filters.CharFilter(method='filter_search', label='Search')
    date_from = django_filters.DateFilter(field_name='created_at__date', lookup_expr='gte')
    date_to = django_filters.DateFilter(field_name='created_at__date', lookup_expr='lte')
    unlinked = django_filters.BooleanFilter(field_name='project', lookup_expr='isnull')

    def filter_search(self, queryset, name, value):
        value = (value or '').strip()
        if not value:
            return queryset
        query = Q(number__icontains=value) | Q(title__icontains=value)
        counterparty = getattr(queryset.model, 'COUNTERPARTY_FIELD', None)
        if counterparty:
            query |= Q(**{f'{counterparty}__icontains': value})
        return queryset.filter(query)


class ExpenseFilter(django_filters.FilterSet):
    project = django_filters.NumberFilter(field_name='project_id')
    user = django_filters.NumberFilter(field_name='user_id')
    status = django_filters.CharFilter(field_name='status')
    category = django_filters.CharFilter(field_name='category')
    search = django_filters.CharFilter(method='filter_search', label='Search')
    date_from = django_filters.DateFilter(field_name='date', lookup_expr='gte')
    date_to = django_filters.DateFilter(field_name='date', lookup_expr='lte')

    def filter_search(self, queryset, name, value):
        value = (value or '').strip()
        if not value:
            return queryset
        return queryset.filter(
            Q(reference__icontains=value) | Q(title__icontains=value) | Q(description__icontains=value)
        )
