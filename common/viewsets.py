from django.db.models import ProtectedError
from rest_framework import status, viewsets
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.exceptions import StateConflict
from common.permissions import PagePermission


class AuditMutationMixin:
    """Writes an audit row for every create/update/delete that goes through the viewset."""

    audit_entity = None

    def _audit(self, *, action, entity_id, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=f"{self.audit_entity}.{action}",
            entity=self.audit_entity,
            entity_id=entity_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def get_create_kwargs(self):
        return {}

    def perform_create(self, serializer):
        instance = serializer.save(**self.get_create_kwargs())
        self._audit(action="create", entity_id=instance.pk, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action="update",
            entity_id=instance.pk,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        entity_id = instance.pk
        try:
            instance.delete()
        except ProtectedError as exc:
            raise StateConflict(f"{self.audit_entity} {entity_id} is referenced by other records.") from exc
        self._audit(action="delete", entity_id=entity_id, before_snapshot=before_snapshot)


class PageModelViewSet(AuditMutationMixin, viewsets.ModelViewSet):
    permission_classes = [IsAuthenticated, PagePermission]
    permission_page = None

    def destroy(self, request, *args, **kwargs):
        instance = self.get_object()
        self.perform_destroy(instance)
        return Response({"detail": "Deleted."}, status=status.HTTP_200_OK)


class RecordViewSet(PageModelViewSet):
    """Viewset for business records whose writes go through a service function.

    ``input_serializer_class`` parses the request body; ``serializer_class``
    renders the stored record. Subclasses implement ``create_record``,
    ``update_record`` and ``delete_record``.
    """

    input_serializer_class = None
    update_serializer_class = None

    def create_record(self, data):
        raise NotImplementedError

    def update_record(self, instance, data):
        raise NotImplementedError

    def delete_record(self, instance):
        raise NotImplementedError

    def _render(self, instance):
        return self.get_serializer(self.get_queryset().get(pk=instance.pk)).data

    def create(self, request, *args, **kwargs):
        serializer = self.input_serializer_class(data=request.data, context=self.get_serializer_context())
        serializer.is_valid(raise_exception=True)
        instance = self.create_record(serializer.validated_data)
        payload = self._render(instance)
        self._audit(action="create", entity_id=instance.pk, after_snapshot=payload)
        return Response(payload, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop("partial", False)
        instance = self.get_object()
        before_snapshot = self.get_serializer(instance).data
        serializer_class = self.update_serializer_class or self.input_serializer_class
        serializer = serializer_class(data=request.data, partial=partial, context=self.get_serializer_context())
        serializer.is_valid(raise_exception=True)
        instance = self.update_record(instance, serializer.validated_data)
        payload = self._render(instance)
        self._audit(action="update", entity_id=instance.pk, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        entity_id = instance.pk
        self.delete_record(instance)
        self._audit(action="delete", entity_id=entity_id, before_snapshot=before_snapshot)
