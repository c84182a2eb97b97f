from __future__ import annotations

from typing import Any, Callable, ContextManager, Hashable, TypeVar

from django.db import DEFAULT_DB_ALIAS, models, transaction
from django.db.models import F

from ..exceptions import RecordNotFound, VersionConflict
from ..optimistic import VersionedRecord

T = TypeVar("T")


class DjangoUnitOfWork:
    """
    Unit of work over ``transaction.atomic``.

    Effects are committed when the outermost atomic block exits, and rolled
    back if the work raises.
    """

    def __init__(self, using: str = DEFAULT_DB_ALIAS) -> None:
        self._using = using

    def begin(self) -> ContextManager[Any]:
        return transaction.atomic(using=self._using)

    def run_atomically(self, fn: Callable[[], T]) -> T:
        with transaction.atomic(using=self._using):
            return fn()


class DjangoCounterRepository:
    """
    Storage collaborator for any model with a counter and a version column.

    >>> class Stock(models.Model):
    ...     quantity = models.IntegerField(default=0)
    ...     version = models.IntegerField(default=0)
    >>> repository = DjangoCounterRepository(Stock)

    ``write`` issues a single conditional UPDATE, so the version check and
    the increment happen atomically in the database:

        UPDATE stock SET quantity = %s, version = version + 1
        WHERE id = %s AND version = %s
    """

    def __init__(
        self,
        model: type[models.Model],
        field: str = "quantity",
        version_field: str = "version",
        using: str = DEFAULT_DB_ALIAS,
    ) -> None:
        self._model = model
        self._field = field
        self._version_field = version_field
        self._using = using

    def _queryset(self) -> models.QuerySet:
        return self._model._default_manager.using(self._using)

    def find(self, record_id: Hashable) -> models.Model | None:
        return self._queryset().filter(pk=record_id).first()

    def get(self, record_id: Hashable) -> models.Model:
        record = self.find(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def find_for_update(self, record_id: Hashable) -> models.Model | None:
        """``SELECT ... FOR UPDATE``; must run inside a unit of work."""
        return self._queryset().select_for_update().filter(pk=record_id).first()

    def save(self, record: models.Model) -> models.Model:
        record.save(using=self._using, update_fields=[self._field])
        return record

    def read(self, record_id: Hashable) -> VersionedRecord:
        row = (
            self._queryset()
            .filter(pk=record_id)
            .values_list(self._field, self._version_field)
            .first()
        )
        if row is None:
            raise RecordNotFound(record_id)
        value, version = row
        return VersionedRecord(record_id, value, version)

    def write(
        self, record_id: Hashable, value: Any, expected_version: int
    ) -> VersionedRecord:
        updated = (
            self._queryset()
            .filter(pk=record_id, **{self._version_field: expected_version})
            .update(**{
                self._field: value,
                self._version_field: F(self._version_field) + 1,
            })
        )
        if updated:
            return VersionedRecord(record_id, value, expected_version + 1)

        current = (
            self._queryset()
            .filter(pk=record_id)
            .values_list(self._version_field, flat=True)
            .first()
        )
        if current is None:
            raise RecordNotFound(record_id)
        raise VersionConflict(record_id, expected_version, current)
