from __future__ import annotations
from django.db import IntegrityError, transaction
from django.shortcuts import get_object_or_404
from rest_framework import status, permissions
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.exceptions import SurveyEngineError
from apps.core.permissions import HasAllRoles
from apps.core.serializer import paginate
from apps.core.enums import Roles
from apps.core.utility import (
    parse_int as _parse_int,
    unique_slug_for_code as _unique_slug_for_code,
    sort_order_conflict_exists as _sort_order_conflict_exists,
)
from .models import Survey, SurveyBlock, SurveyQuestion, SurveyStatus, SurveyVersion
from .serializers import (
    SurveyCreateSerializer, SurveyListSerializer, SurveyDetailSerializer,
    BlockCreateSerializer, QuestionCreateSerializer, QuestionReadSerializer,
    SurveyVersionBriefSerializer, SurveyVersionSerializer,
)
from . import services


def _code_taken(survey_id: int, code: str, exclude_pk=None) -> bool:
    qs = SurveyQuestion.objects.filter(block__survey_id=survey_id, code=code)
    if exclude_pk:
        qs = qs.exclude(pk=exclude_pk)
    return qs.exists()


class SurveyListCreateView(APIView):
    """
    GET: Paginated list with optional filters:
         - organization_id
         - status (must be a valid SurveyStatus)
         - search (case-insensitive match on title)
         Query params: page (default 1), page_size (default 10, max 100)

    POST: Create a new draft Survey. Auto-generates a unique `code` from the title.
    """
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles_by_method = {"GET": [Roles.VIEWER.value], "POST": [Roles.EDITOR.value]}

    def get(self, request):
        qs = Survey.objects.order_by("id")

        org_id = request.query_params.get("organization_id")
        if org_id:
            oid = _parse_int(org_id, 0)
            if oid > 0:
                qs = qs.filter(organization_id=oid)

        status_param = (request.query_params.get("status") or "").strip()
        if status_param in dict(SurveyStatus.choices):
            qs = qs.filter(status=status_param)

        search = (request.query_params.get("search") or "").strip()
        if search:
            qs = qs.filter(title__icontains=search)

        return Response(paginate(qs, request.query_params, SurveyListSerializer))

    @transaction.atomic
    def post(self, request):
        ser = SurveyCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        base = (ser.validated_data.get("title") or "").strip()
        code = _unique_slug_for_code(Survey, base)

        survey = ser.save(code=code, created_by=request.user)
        return Response(SurveyDetailSerializer(survey).data, status=status.HTTP_201_CREATED)


class SurveyDetailView(APIView):
    """
    GET: Return a survey with blocks/questions (current draft).
    PATCH: Partial update of survey-level fields; settings are merged.
    DELETE: Remove a survey that was never published.
    """
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles_by_method = {"GET": [Roles.VIEWER.value], "PATCH": [Roles.EDITOR.value], "DELETE": [Roles.EDITOR.value]}

    def get(self, request, survey_id: int):
        survey = get_object_or_404(
            Survey.objects.prefetch_related("blocks__questions"),
            pk=survey_id,
        )
        return Response(SurveyDetailSerializer(survey).data)

    @transaction.atomic
    def patch(self, request, survey_id: int):
        survey = get_object_or_404(Survey, pk=survey_id)
        if survey.status == SurveyStatus.ARCHIVED:
            return Response({"detail": "Archived surveys cannot be edited"}, status=status.HTTP_409_CONFLICT)
        ser = SurveyCreateSerializer(survey, data=request.data, partial=True)
        ser.is_valid(raise_exception=True)
        ser.save()
        return Response(SurveyDetailSerializer(survey).data)

    @transaction.atomic
    def delete(self, request, survey_id: int):
        survey = get_object_or_404(Survey, pk=survey_id)
        if survey.versions.exists():
            return Response(
                {"detail": "Published surveys cannot be deleted; archive instead"},
                status=status.HTTP_409_CONFLICT,
            )
        survey.delete()
        return Response(status=status.HTTP_204_NO_CONTENT)


class BlockCreateView(APIView):
    """
    POST: Create a block under a specific survey.
    """
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.EDITOR.value]

    @transaction.atomic
    def post(self, request, survey_id: int):
        survey = get_object_or_404(Survey, pk=survey_id)
        ser = BlockCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        if _sort_order_conflict_exists(survey.blocks.all(), ser.validated_data.get("sort_order")):
            return Response(
                {"detail": "Sort order must be unique within the survey.", "field": "sort_order"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        block = ser.save(survey=survey)
        return Response({"id": block.id}, status=status.HTTP_201_CREATED)


class QuestionCreateView(APIView):
    """
    POST: Create a question under a block.
         - Enforces unique sort_order within the block and unique code within the survey.
         - Auto-generates a fallback code (e.g., q-<id>) when not provided.
         Variant completeness (options, rows, scale) is checked at publish, not here.
    """
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.EDITOR.value]

    @transaction.atomic
    def post(self, request, block_id: int):
        block = get_object_or_404(SurveyBlock, pk=block_id)
        ser = QuestionCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)

        if _sort_order_conflict_exists(block.questions.all(), ser.validated_data.get("sort_order")):
            return Response(
                {"detail": "Sort order must be unique within the block.", "field": "sort_order"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        code = (ser.validated_data.get("code") or "").strip()
        if code and _code_taken(block.survey_id, code):
            return Response(
                {"detail": "Question id must be unique within the survey.", "field": "code"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        try:
            with transaction.atomic():
                question = ser.save(block=block, code=code)
        except IntegrityError:
            return Response(
                {"detail": "Sort order must be unique within the block.", "field": "sort_order"},
                status=status.HTTP_400_BAD_REQUEST,
            )

        # Auto-generate code if empty, based on ID (stable & readable)
        if not question.code:
            question.code = f"q-{question.id}"
            question.save(update_fields=["code"])

        return Response({"id": question.id, "code": question.code}, status=status.HTTP_201_CREATED)


class QuestionDetailView(APIView):
    """
    GET: Return a single question.
    PATCH: Update question attributes (sort_order/code uniqueness enforced).
    DELETE: Remove the question from the draft.
    """
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles_by_method = {"GET": [Roles.VIEWER.value], "PATCH": [Roles.EDITOR.value], "DELETE": [Roles.EDITOR.value]}

    def get(self, request, question_id: int):
        q = get_object_or_404(SurveyQuestion, pk=question_id)
        return Response(QuestionReadSerializer(q).data)

    @transaction.atomic
    def patch(self, request, question_id: int):
        q = get_object_or_404(SurveyQuestion.objects.select_related("block"), pk=question_id)
        ser = QuestionCreateSerializer(q, data=request.data, partial=True)
        ser.is_valid(raise_exception=True)

        new_order = ser.validated_data.get("sort_order")
        if _sort_order_conflict_exists(q.block.questions.all(), new_order, exclude_pk=q.pk):
            return Response(
                {"detail": "Sort order must be unique within the block.", "field": "sort_order"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        new_code = (ser.validated_data.get("code") or "").strip()
        if new_code and _code_taken(q.block.survey_id, new_code, exclude_pk=q.pk):
            return Response(
                {"detail": "Question id must be unique within the survey.", "field": "code"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        if "code" in ser.validated_data and not new_code:
            ser.validated_data.pop("code")

        ser.save()
        return Response(QuestionReadSerializer(q).data)

    @transaction.atomic
    def delete(self, request, question_id: int):
        q = get_object_or_404(SurveyQuestion, pk=question_id)
        q.delete()
        return Response(status=status.HTTP_204_NO_CONTENT)


class SurveyValidateView(APIView):
    """GET: Field-level validation report for the current draft."""
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.EDITOR.value]

    def get(self, request, survey_id: int):
        survey = get_object_or_404(Survey, pk=survey_id)
        result = services.validate(survey)
        return Response({"valid": result.is_valid, "issues": result.as_list()})


class SurveyPublishView(APIView):
    """POST: Freeze the draft into a new published version."""
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.EDITOR.value]

    def post(self, request, survey_id: int):
        survey = get_object_or_404(Survey, pk=survey_id)
        try:
            version = services.publish(survey, published_by=request.user)
        except SurveyEngineError as e:
            return Response(e.as_dict(), status=status.HTTP_400_BAD_REQUEST)
        return Response(
            {
                "survey_id": survey.id,
                "status": survey.status,
                "version": version.version,
                "published_at": version.published_at,
            },
            status=status.HTTP_201_CREATED,
        )


class SurveyArchiveView(APIView):
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.EDITOR.value]

    def post(self, request, survey_id: int):
        survey = get_object_or_404(Survey, pk=survey_id)
        services.archive(survey)
        return Response({"survey_id": survey.id, "status": survey.status})


class SurveyVersionListView(APIView):
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.VIEWER.value]

    def get(self, request, survey_id: int):
        survey = get_object_or_404(Survey, pk=survey_id)
        versions = survey.versions.order_by("-version")
        return Response({"results": SurveyVersionBriefSerializer(versions, many=True).data})


class SurveyVersionDetailView(APIView):
    """GET: One frozen version, definition included."""
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.VIEWER.value]

    def get(self, request, survey_id: int, version: int):
        snapshot = get_object_or_404(SurveyVersion, survey_id=survey_id, version=version)
        return Response(SurveyVersionSerializer(snapshot).data)


class ClientSurveyListView(APIView):
    """
    Recipient-facing list of surveys the caller is assigned to through an
    active assignment (directly, via organization, or via department).
    Only `status=published` (the default) returns anything.
    """
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        from apps.assignments.services import assignments_for_user  # local import to avoid circulars

        wanted = (request.query_params.get("status") or SurveyStatus.PUBLISHED).strip().lower()
        if wanted != SurveyStatus.PUBLISHED:
            return Response({"data": []})

        org_id = _parse_int(request.query_params.get("organization_id"), 0) or None
        data = []
        for assignment in assignments_for_user(request.user, organization_id=org_id):
            version = assignment.survey_version
            data.append({
                "assignment_id": assignment.id,
                "survey_id": assignment.survey_id,
                "title": version.definition.get("title"),
                "version": version.version,
                "start_date": assignment.start_date,
                "end_date": assignment.end_date,
                "access_control": assignment.access_control,
                "definition": version.definition,
            })
        return Response({"data": data})
