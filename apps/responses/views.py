from __future__ import annotations

from django.shortcuts import get_object_or_404
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.assignments.models import Assignment
from apps.core.enums import Roles
from apps.core.exceptions import SubmissionRejected
from apps.core.permissions import HasAllRoles
from apps.core.serializer import paginate
from .models import ResponseStatus, SurveyResponse
from .serializers import (
    SubmissionSerializer, SurveyResponseReadSerializer,
    OwnResponseSerializer, ResponseDashboardSerializer,
)
from .services import respondent_key_for, submit_response

# Rejection reason -> HTTP status. Clients retry 5xx only.
REJECTION_STATUS = {
    "invalid": status.HTTP_400_BAD_REQUEST,
    "survey_mismatch": status.HTTP_400_BAD_REQUEST,
    "consent_required": status.HTTP_400_BAD_REQUEST,
    "login_required": status.HTTP_403_FORBIDDEN,
    "not_assigned": status.HTTP_403_FORBIDDEN,
    "already_submitted": status.HTTP_409_CONFLICT,
    "window_closed": status.HTTP_410_GONE,
    "not_open": status.HTTP_503_SERVICE_UNAVAILABLE,
}


class AssignmentResponsesView(APIView):
    """
    POST: Submit (or save in progress) a response for an assignment.
          Idempotent on `local_id`: 201 for a new record, 200 with the
          original record when that `local_id` was already accepted.
          Access policy (login, anonymous, one-time) comes from the assignment.
    GET:  Paginated list of responses for admins (no answers, no identities).
    """
    required_roles_by_method = {"GET": [Roles.VIEWER.value]}

    def get_permissions(self):
        if self.request.method == "POST":
            return [permissions.AllowAny()]
        return [permissions.IsAuthenticated(), HasAllRoles()]

    def get(self, request, assignment_id: int):
        assignment = get_object_or_404(Assignment, pk=assignment_id)
        qs = assignment.responses.select_related("organization").order_by("-submitted_at", "-id")
        status_param = (request.query_params.get("status") or "").strip()
        if status_param in dict(ResponseStatus.choices):
            qs = qs.filter(status=status_param)
        return Response(paginate(qs, request.query_params, ResponseDashboardSerializer))

    def post(self, request, assignment_id: int):
        assignment = get_object_or_404(
            Assignment.objects.select_related("survey_version"), pk=assignment_id
        )
        ser = SubmissionSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data

        try:
            response, created = submit_response(
                assignment,
                local_id=data["local_id"],
                answers=data["answers"],
                user=request.user,
                survey_id=data.get("survey_id"),
                metadata=data.get("metadata"),
                complete=data["status"] == ResponseStatus.COMPLETED,
            )
        except SubmissionRejected as e:
            return Response(e.as_dict(), status=REJECTION_STATUS.get(e.reason, status.HTTP_400_BAD_REQUEST))

        return Response(
            SurveyResponseReadSerializer(response).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class OwnResponseView(APIView):
    """GET: The caller's own response by local_id, e.g. to resume a saved draft."""
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, assignment_id: int, local_id: str):
        response = get_object_or_404(
            SurveyResponse.objects.select_related("assignment", "survey_version").prefetch_related("answers"),
            assignment_id=assignment_id,
            local_id=local_id,
            respondent_key=respondent_key_for(assignment_id, request.user.id),
        )
        return Response(OwnResponseSerializer(response).data)
