from rest_framework import serializers
from apps.accounts.models import Organization
from .models import (
    Survey, SurveyBlock, SurveyQuestion, SurveyVersion,
    AnonymityMode, QuestionType,
)


class SurveySettingsSerializer(serializers.Serializer):
    anonymityMode = serializers.ChoiceField(choices=AnonymityMode.choices, required=False)
    anonymityThreshold = serializers.IntegerField(required=False)
    consentRequired = serializers.BooleanField(required=False)
    allowMultipleResponses = serializers.BooleanField(required=False)
    showProgressBar = serializers.BooleanField(required=False)
    allowSaveAndContinue = serializers.BooleanField(required=False)
    randomizeQuestions = serializers.BooleanField(required=False)
    randomizeOptions = serializers.BooleanField(required=False)


class SurveyCreateSerializer(serializers.ModelSerializer):
    organization_id = serializers.IntegerField(write_only=True, required=False, allow_null=True)
    settings = serializers.JSONField(required=False)

    class Meta:
        model = Survey
        fields = [
            "code", "title", "description", "organization_id", "settings", "branding",
            "completion_settings", "default_language", "supported_languages", "reflection_prompts",
        ]
        extra_kwargs = {
            "code": {"read_only": True},
        }

    def validate_organization_id(self, value):
        if value is not None and not Organization.objects.filter(pk=value).exists():
            raise serializers.ValidationError("Invalid organization.")
        return value

    def validate_settings(self, value):
        if not isinstance(value, dict):
            raise serializers.ValidationError("Settings must be an object.")
        ser = SurveySettingsSerializer(data=value)
        ser.is_valid(raise_exception=True)
        return {**value, **ser.validated_data}

    def _merge_settings(self, instance, validated_data):
        incoming = validated_data.pop("settings", None)
        if incoming is not None:
            base = dict(instance.settings) if instance is not None else Survey._meta.get_field("settings").get_default()
            base.update(incoming)
            validated_data["settings"] = base
        return validated_data

    def create(self, validated_data):
        return super().create(self._merge_settings(None, validated_data))

    def update(self, instance, validated_data):
        return super().update(instance, self._merge_settings(instance, validated_data))


class SurveyListSerializer(serializers.ModelSerializer):
    class Meta:
        model = Survey
        fields = ["id", "code", "title", "description", "status", "version", "published_at", "organization"]


class BlockCreateSerializer(serializers.ModelSerializer):
    class Meta:
        model = SurveyBlock
        fields = ["title", "description", "sort_order"]


class QuestionCreateSerializer(serializers.ModelSerializer):
    code = serializers.CharField(max_length=128, required=False, allow_blank=True)
    type = serializers.ChoiceField(choices=QuestionType.choices)
    options = serializers.ListField(child=serializers.CharField(), required=False)
    matrix_rows = serializers.ListField(child=serializers.CharField(), required=False)
    matrix_columns = serializers.ListField(child=serializers.CharField(), required=False)
    ranking_items = serializers.ListField(child=serializers.CharField(), required=False)

    class Meta:
        model = SurveyQuestion
        fields = [
            "code", "title", "description", "type", "required", "sensitive", "sort_order",
            "options", "allow_other", "matrix_rows", "matrix_columns", "scale",
            "ranking_items", "max_rankings", "conditional_logic", "validation",
        ]

    def validate_scale(self, value):
        if value is not None and not isinstance(value, dict):
            raise serializers.ValidationError("Scale must be an object with min/max.")
        return value

    def validate_conditional_logic(self, value):
        if value is None:
            return value
        if not isinstance(value, dict) or not isinstance(value.get("showIf", []), list):
            raise serializers.ValidationError("Expected {'showIf': [...], 'logic': 'and'|'or'}.")
        return value


class QuestionReadSerializer(serializers.ModelSerializer):
    class Meta:
        model = SurveyQuestion
        fields = [
            "id", "code", "title", "description", "type", "required", "sensitive", "sort_order",
            "options", "allow_other", "matrix_rows", "matrix_columns", "scale",
            "ranking_items", "max_rankings", "conditional_logic", "validation",
        ]


class BlockReadSerializer(serializers.ModelSerializer):
    questions = QuestionReadSerializer(many=True, read_only=True)

    class Meta:
        model = SurveyBlock
        fields = ["id", "title", "description", "sort_order", "questions"]


class SurveyDetailSerializer(serializers.ModelSerializer):
    blocks = BlockReadSerializer(many=True, read_only=True)

    class Meta:
        model = Survey
        fields = [
            "id", "code", "title", "description", "status", "version", "organization",
            "settings", "branding", "completion_settings", "default_language",
            "supported_languages", "reflection_prompts", "published_at", "blocks",
        ]


class SurveyVersionSerializer(serializers.ModelSerializer):
    class Meta:
        model = SurveyVersion
        fields = ["id", "survey", "version", "published_at", "definition"]


class SurveyVersionBriefSerializer(serializers.ModelSerializer):
    class Meta:
        model = SurveyVersion
        fields = ["id", "version", "published_at"]
