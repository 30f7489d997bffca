from rest_framework import serializers

from .models import Assignment, AssignmentStatus, ReminderFrequency, ReminderFireRecord


class ReminderScheduleSerializer(serializers.Serializer):
    enabled = serializers.BooleanField(required=False)
    frequency = serializers.ChoiceField(choices=ReminderFrequency.choices, required=False)
    daysBeforeDeadline = serializers.ListField(
        child=serializers.IntegerField(min_value=0), required=False,
    )


class AccessControlSerializer(serializers.Serializer):
    requireLogin = serializers.BooleanField(required=False)
    allowAnonymous = serializers.BooleanField(required=False)
    oneTimeAccess = serializers.BooleanField(required=False)


class AssignmentCreateSerializer(serializers.Serializer):
    """Distribution payload as sent by the admin UI (camelCase keys)."""
    assignedTo = serializers.ListField(child=serializers.IntegerField(min_value=1), required=False, default=list)
    assignedOrganizations = serializers.ListField(child=serializers.IntegerField(min_value=1), required=False, default=list)
    assignedDepartments = serializers.ListField(child=serializers.IntegerField(min_value=1), required=False, default=list)
    startDate = serializers.DateTimeField(required=False, allow_null=True, default=None)
    endDate = serializers.DateTimeField(required=False, allow_null=True, default=None)
    reminderSchedule = ReminderScheduleSerializer(required=False)
    accessControl = AccessControlSerializer(required=False)
    activate = serializers.BooleanField(required=False, default=False)

    def validate(self, attrs):
        start, end = attrs.get("startDate"), attrs.get("endDate")
        if start and end and not start < end:
            raise serializers.ValidationError({"endDate": "endDate must be after startDate."})
        if not (attrs["assignedTo"] or attrs["assignedOrganizations"] or attrs["assignedDepartments"]):
            raise serializers.ValidationError("At least one user, organization or department must be targeted.")
        return attrs


class AssignmentStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=AssignmentStatus.choices)


class ReminderFireSerializer(serializers.ModelSerializer):
    class Meta:
        model = ReminderFireRecord
        fields = ["offset_days", "fired_at", "recipient_count"]


class AssignmentSerializer(serializers.ModelSerializer):
    version = serializers.IntegerField(source="survey_version.version", read_only=True)
    assigned_users = serializers.PrimaryKeyRelatedField(many=True, read_only=True)
    assigned_organizations = serializers.PrimaryKeyRelatedField(many=True, read_only=True)
    assigned_departments = serializers.PrimaryKeyRelatedField(many=True, read_only=True)
    responses = serializers.SerializerMethodField()

    class Meta:
        model = Assignment
        fields = [
            "id", "survey", "version", "status",
            "assigned_users", "assigned_organizations", "assigned_departments",
            "start_date", "end_date", "reminder_schedule", "access_control", "unresolved_targets",
            "responses", "counts_reconciled_at", "created_at", "updated_at",
        ]
        read_only_fields = fields

    def get_responses(self, obj):
        return {
            "total": obj.responses_total,
            "completed": obj.responses_completed,
            "in_progress": obj.responses_in_progress,
        }


class AssignmentDetailSerializer(AssignmentSerializer):
    recipient_count = serializers.SerializerMethodField()
    reminder_fires = ReminderFireSerializer(many=True, read_only=True)

    class Meta(AssignmentSerializer.Meta):
        fields = AssignmentSerializer.Meta.fields + ["recipient_count", "reminder_fires"]
        read_only_fields = fields

    def get_recipient_count(self, obj) -> int:
        from .services import resolve_recipients
        return len(resolve_recipients(obj))
