from rest_framework import serializers
from .models import SurveyResponse, ResponseStatus
from .services import answers_of


class SubmissionSerializer(serializers.Serializer):
    local_id = serializers.CharField(max_length=64)
    survey_id = serializers.IntegerField(required=False)
    answers = serializers.DictField(child=serializers.JSONField(allow_null=True), allow_empty=True)
    metadata = serializers.DictField(required=False, default=dict)
    # in_progress = save-and-continue; completed = final submission
    status = serializers.ChoiceField(choices=ResponseStatus.choices, required=False, default=ResponseStatus.COMPLETED)

    def validate_local_id(self, value: str) -> str:
        value = value.strip()
        if not value:
            raise serializers.ValidationError("local_id must not be blank.")
        return value


class SurveyResponseReadSerializer(serializers.ModelSerializer):
    """Acknowledgement returned to the submitting client."""
    survey_id = serializers.IntegerField(source="assignment.survey_id", read_only=True)
    version = serializers.IntegerField(source="survey_version.version", read_only=True)

    class Meta:
        model = SurveyResponse
        fields = ["id", "local_id", "assignment", "survey_id", "version", "status", "submitted_at", "completed_at"]


class OwnResponseSerializer(SurveyResponseReadSerializer):
    """The respondent's own record, answers included (sensitive ones decrypted)."""
    answers = serializers.SerializerMethodField()

    class Meta(SurveyResponseReadSerializer.Meta):
        fields = SurveyResponseReadSerializer.Meta.fields + ["answers"]

    def get_answers(self, obj: SurveyResponse):
        return answers_of(obj)


class ResponseDashboardSerializer(serializers.ModelSerializer):
    organization = serializers.CharField(source="organization.name", default=None, read_only=True)

    class Meta:
        model = SurveyResponse
        fields = ["id", "local_id", "status", "organization", "submitted_at", "completed_at"]
