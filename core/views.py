import csv
import logging

from django.contrib.auth import get_user_model
from django.db import connections, transaction
from django.http import HttpResponse
from django.utils.dateparse import parse_datetime
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework_simplejwt.views import TokenObtainPairView

from common.exceptions import StateConflict
from common.permissions import EDIT, VIEW, PagePermission
from common.viewsets import PageModelViewSet
from core.models import AuditLog, Permission, Role, RolePermission
from core.serializers import (
    AuditLogSerializer,
    EmailOrUsernameTokenObtainPairSerializer,
    PermissionSerializer,
    RolePermissionMatrixSerializer,
    RoleSerializer,
    UserPermissionsSerializer,
    UserSerializer,
)

User = get_user_model()
logger = logging.getLogger(__name__)


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class UserViewSet(PageModelViewSet):
    queryset = User.objects.select_related("role").order_by("id")
    serializer_class = UserSerializer
    permission_page = "users"
    permission_action_map = {"activate": EDIT, "deactivate": EDIT, "permissions": VIEW}
    audit_entity = "user"

    def perform_destroy(self, instance):
        if instance.pk == self.request.user.pk:
            raise StateConflict("You cannot delete your own account.")
        super().perform_destroy(instance)

    def _set_active(self, request, is_active):
        user = self.get_object()
        if not is_active and user.pk == request.user.pk:
            raise StateConflict("You cannot deactivate your own account.")
        before_snapshot = self.get_serializer(user).data
        user.is_active = is_active
        user.save(update_fields=["is_active"])
        after_snapshot = self.get_serializer(user).data
        self._audit(
            action="activate" if is_active else "deactivate",
            entity_id=user.pk,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )
        return Response(after_snapshot)

    @action(detail=True, methods=["post"], url_path="activate")
    def activate(self, request, pk=None):
        return self._set_active(request, True)

    @action(detail=True, methods=["post"], url_path="deactivate")
    def deactivate(self, request, pk=None):
        return self._set_active(request, False)

    @action(detail=True, methods=["get"], url_path="permissions")
    def permissions(self, request, pk=None):
        return Response(UserPermissionsSerializer(self.get_object()).data)


class RoleViewSet(PageModelViewSet):
    queryset = Role.objects.prefetch_related("role_permissions__permission").order_by("id")
    serializer_class = RoleSerializer
    permission_page = "roles"
    permission_action_map = {"set_permissions": EDIT}
    audit_entity = "role"

    def perform_destroy(self, instance):
        if instance.users.exists():
            raise StateConflict(f"Role {instance.name} is assigned to users and cannot be deleted.")
        super().perform_destroy(instance)

    @action(detail=True, methods=["put"], url_path="permissions")
    def set_permissions(self, request, pk=None):
        role = self.get_object()
        serializer = RolePermissionMatrixSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        before_snapshot = self.get_serializer(role).data

        with transaction.atomic():
            RolePermission.objects.filter(role=role).delete()
            RolePermission.objects.bulk_create(
                [RolePermission(role=role, **entry) for entry in serializer.validated_data["permissions"]]
            )

        role = self.get_queryset().get(pk=role.pk)
        after_snapshot = self.get_serializer(role).data
        self._audit(action="permissions", entity_id=role.pk, before_snapshot=before_snapshot, after_snapshot=after_snapshot)
        return Response(after_snapshot)


class PermissionViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Permission.objects.order_by("name")
    serializer_class = PermissionSerializer
    permission_classes = [IsAuthenticated, PagePermission]
    permission_page = "roles"
    pagination_class = None


class AuditLogViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = AuditLog.objects.select_related("actor")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, PagePermission]
    permission_page = "audit_logs"
    permission_action_map = {"export": VIEW}

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")

        start_date = self.request.query_params.get("start_date")
        end_date = self.request.query_params.get("end_date")
        actor_id = self.request.query_params.get("actor_id")
        action_name = self.request.query_params.get("action")
        entity = self.request.query_params.get("entity")

        if start_date:
            dt = parse_datetime(start_date)
            if dt:
                qs = qs.filter(created_at__gte=dt)
        if end_date:
            dt = parse_datetime(end_date)
            if dt:
                qs = qs.filter(created_at__lte=dt)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if action_name:
            qs = qs.filter(action=action_name)
        if entity:
            qs = qs.filter(entity=entity)

        return qs

    @action(detail=False, methods=["get"], url_path="export")
    def export(self, request):
        logs = self.get_queryset()
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="audit-logs.csv"'

        writer = csv.writer(response)
        writer.writerow(["id", "created_at", "actor", "action", "entity", "entity_id", "request_id"])
        for log in logs:
            writer.writerow(
                [
                    log.id,
                    log.created_at.isoformat(),
                    getattr(log.actor, "username", ""),
                    log.action,
                    log.entity,
                    log.entity_id,
                    log.request_id,
                ]
            )
        return response


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
