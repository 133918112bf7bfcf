from django.contrib.auth import get_user_model, password_validation
from rest_framework import serializers
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from common.permissions import effective_permissions
from core.models import AuditLog, Permission, Role, RolePermission

User = get_user_model()


class PermissionSerializer(serializers.ModelSerializer):
    class Meta:
        model = Permission
        fields = ["id", "name", "description"]
        read_only_fields = ["id"]


class RolePermissionSerializer(serializers.ModelSerializer):
    permission_name = serializers.CharField(source="permission.name", read_only=True)

    class Meta:
        model = RolePermission
        fields = ["id", "permission", "permission_name", "can_view", "can_create", "can_edit", "can_delete"]
        read_only_fields = ["id"]


class RoleSerializer(serializers.ModelSerializer):
    permissions = RolePermissionSerializer(source="role_permissions", many=True, read_only=True)
    user_count = serializers.IntegerField(source="users.count", read_only=True)

    class Meta:
        model = Role
        fields = ["id", "name", "description", "permissions", "user_count", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class RolePermissionEntrySerializer(serializers.Serializer):
    permission_id = serializers.PrimaryKeyRelatedField(queryset=Permission.objects.all(), source="permission")
    can_view = serializers.BooleanField(default=False)
    can_create = serializers.BooleanField(default=False)
    can_edit = serializers.BooleanField(default=False)
    can_delete = serializers.BooleanField(default=False)


class RolePermissionMatrixSerializer(serializers.Serializer):
    permissions = RolePermissionEntrySerializer(many=True)

    def validate_permissions(self, value):
        seen = set()
        for entry in value:
            permission_id = entry["permission"].id
            if permission_id in seen:
                raise serializers.ValidationError(f"Permission {permission_id} is listed more than once.")
            seen.add(permission_id)
        return value


class UserSerializer(serializers.ModelSerializer):
    password = serializers.CharField(write_only=True, required=False)
    role_name = serializers.CharField(source="role.name", read_only=True)

    class Meta:
        model = User
        fields = [
            "id",
            "username",
            "email",
            "password",
            "first_name",
            "last_name",
            "phone",
            "role",
            "role_name",
            "permission_overrides",
            "is_active",
            "is_superuser",
            "date_joined",
            "last_login",
        ]
        read_only_fields = ["id", "is_superuser", "date_joined", "last_login"]

    def validate_email(self, value):
        normalized_email = value.strip().lower()
        duplicates = User.objects.filter(email__iexact=normalized_email)
        if self.instance is not None:
            duplicates = duplicates.exclude(pk=self.instance.pk)
        if normalized_email and duplicates.exists():
            raise serializers.ValidationError("A user with this email already exists.")
        return normalized_email

    def validate_permission_overrides(self, value):
        if not isinstance(value, dict):
            raise serializers.ValidationError("Expected an object.")
        pages = value.get("pageAccess", [])
        if not isinstance(pages, list) or not all(isinstance(page, str) for page in pages):
            raise serializers.ValidationError("pageAccess must be a list of page names.")
        return value

    def validate(self, attrs):
        if self.instance is None and not attrs.get("password"):
            raise serializers.ValidationError({"password": ["This field is required."]})
        if attrs.get("password"):
            password_validation.validate_password(attrs["password"])
        return attrs

    def create(self, validated_data):
        password = validated_data.pop("password")
        return User.objects.create_user(password=password, **validated_data)

    def update(self, instance, validated_data):
        password = validated_data.pop("password", None)
        for field, value in validated_data.items():
            setattr(instance, field, value)
        if password:
            instance.set_password(password)
        instance.save()
        return instance


class UserPermissionsSerializer(serializers.Serializer):
    def to_representation(self, instance):
        return {
            "user_id": instance.id,
            "role": instance.role.name if instance.role_id else None,
            "is_superuser": instance.is_superuser,
            "permissions": effective_permissions(instance),
        }


class EmailOrUsernameTokenObtainPairSerializer(TokenObtainPairSerializer):
    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token["role"] = user.role.name if user.role_id else None
        token["is_superuser"] = user.is_superuser
        token["is_staff"] = user.is_staff
        return token

    def validate(self, attrs):
        username = attrs.get("username", "")
        if username and "@" in username:
            try:
                user = User.objects.get(email__iexact=username)
                attrs["username"] = user.get_username()
            except User.DoesNotExist:
                pass
        return super().validate(attrs)


class AuditLogSerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True)

    class Meta:
        model = AuditLog
        fields = [
            "id",
            "actor",
            "actor_username",
            "action",
            "entity",
            "entity_id",
            "before_snapshot",
            "after_snapshot",
            "request_id",
            "created_at",
        ]
        read_only_fields = fields
