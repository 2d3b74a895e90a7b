"""Read-only access to the inbound contact-form archive.

Records are loaded into ``ExternalRecord`` snapshots so field extraction can
run without further queries.
"""

from dataclasses import dataclass, field
from functools import reduce
from operator import or_

from django.db.models import Prefetch, Q

from apps.records.models import InboundRecord, InboundRecordMeta, InboundStatus


@dataclass(frozen=True)
class ExternalRecord:
    id: object
    title: str = ""
    content: str = ""
    excerpt: str = ""
    created_at: object = None
    meta: dict = field(default_factory=dict)

    def get_meta(self, key):
        values = self.meta.get(key)
        if not values:
            return None
        return values[0]

    def text_fields(self):
        return [self.content, self.excerpt, self.title]

    @classmethod
    def from_model(cls, record):
        meta = {}
        for row in record.meta.all():
            meta.setdefault(row.key, []).append(row.value)
        return cls(
            id=record.id,
            title=record.title,
            content=record.content,
            excerpt=record.excerpt,
            created_at=record.created_at,
            meta=meta,
        )


class InboundRecordStore:
    def _queryset(self, include_unpublished=False):
        queryset = InboundRecord.objects.prefetch_related(
            Prefetch("meta", queryset=InboundRecordMeta.objects.order_by("id"))
        ).order_by("-created_at")
        if not include_unpublished:
            queryset = queryset.filter(status=InboundStatus.PUBLISHED)
        return queryset

    def get(self, record_id):
        record = self._queryset(include_unpublished=True).filter(pk=record_id).first()
        return ExternalRecord.from_model(record) if record else None

    def find_by_field_values(self, keys, values):
        """Newest published record having any of ``keys`` equal to any of ``values``."""
        if not keys or not values:
            return None
        record = (
            self._queryset()
            .filter(meta__key__in=list(keys), meta__value__in=list(values))
            .distinct()
            .first()
        )
        return ExternalRecord.from_model(record) if record else None

    def search_values(self, needles, marker):
        """Newest published record with a value containing ``marker`` and any needle."""
        needles = [needle for needle in dict.fromkeys(str(n) for n in needles) if needle]
        if not needles:
            return None
        any_needle = reduce(or_, (Q(value__contains=needle) for needle in needles))
        record_id = (
            InboundRecordMeta.objects.filter(record__status=InboundStatus.PUBLISHED)
            .filter(Q(value__contains=marker) & any_needle)
            .order_by("-record__created_at")
            .values_list("record_id", flat=True)
            .first()
        )
        return self.get(record_id) if record_id else None

    def iter_records(self, include_unpublished=False):
        for record in self._queryset(include_unpublished=include_unpublished).iterator(chunk_size=200):
            yield ExternalRecord.from_model(record)
