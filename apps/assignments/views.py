from __future__ import annotations

from django.db import transaction
from django.shortcuts import get_object_or_404
from rest_framework import status, permissions
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.enums import Roles
from apps.core.exceptions import AssignmentStateError, SurveyEngineError
from apps.core.permissions import HasAllRoles
from apps.core.serializer import paginate
from apps.surveys.models import Survey
from .models import Assignment, AssignmentStatus
from .serializers import (
    AssignmentCreateSerializer, AssignmentSerializer,
    AssignmentDetailSerializer, AssignmentStatusSerializer,
)
from . import services


class SurveyAssignView(APIView):
    """
    POST: Distribute the latest published version of a survey.
         Body: {assignedTo[], assignedOrganizations[], assignedDepartments[],
                startDate, endDate, reminderSchedule, accessControl, activate}
         Unknown user/org/department ids -> 400 with the unresolved references
         and the id of the draft kept for them.
    """
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.EDITOR.value]

    def post(self, request, survey_id: int):
        survey = get_object_or_404(Survey, pk=survey_id)
        ser = AssignmentCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        try:
            assignment = services.create_assignment(
                survey,
                services.AssignmentTargets(
                    users=data["assignedTo"],
                    organizations=data["assignedOrganizations"],
                    departments=data["assignedDepartments"],
                ),
                services.AssignmentWindow(data.get("startDate"), data.get("endDate")),
                data.get("reminderSchedule"),
                data.get("accessControl"),
                created_by=request.user,
                activate=data["activate"],
            )
        except AssignmentStateError as e:
            return Response(e.as_dict(), status=status.HTTP_409_CONFLICT)
        except SurveyEngineError as e:
            return Response(e.as_dict(), status=status.HTTP_400_BAD_REQUEST)
        return Response(AssignmentDetailSerializer(assignment).data, status=status.HTTP_201_CREATED)


class SurveyAssignmentListView(APIView):
    """
    GET: Paginated assignments of a survey, newest first.
         Optional ?status= filter (must be a valid AssignmentStatus).
    """
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.VIEWER.value]

    def get(self, request, survey_id: int):
        survey = get_object_or_404(Survey, pk=survey_id)
        qs = (
            survey.assignments.select_related("survey_version")
            .prefetch_related("assigned_users", "assigned_organizations", "assigned_departments")
            .order_by("-id")
        )
        status_param = (request.query_params.get("status") or "").strip()
        if status_param in dict(AssignmentStatus.choices):
            qs = qs.filter(status=status_param)
        return Response(paginate(qs, request.query_params, AssignmentSerializer))


class AssignmentDetailView(APIView):
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.VIEWER.value]

    def get(self, request, assignment_id: int):
        assignment = get_object_or_404(Assignment.objects.select_related("survey_version"), pk=assignment_id)
        return Response(AssignmentDetailSerializer(assignment).data)


class AssignmentStatusView(APIView):
    """POST {"status": ...}: move an assignment along its status graph (409 if not allowed)."""
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.EDITOR.value]

    @transaction.atomic
    def post(self, request, assignment_id: int):
        assignment = get_object_or_404(Assignment.objects.select_for_update(), pk=assignment_id)
        ser = AssignmentStatusSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            services.transition(assignment, ser.validated_data["status"])
        except AssignmentStateError as e:
            return Response(e.as_dict(), status=status.HTTP_409_CONFLICT)
        return Response(AssignmentDetailSerializer(assignment).data)
