from __future__ import annotations

from datetime import timedelta
from django.db.models.functions import TruncDate, TruncWeek
from django.db.models import Count
from django.utils import timezone
from django.shortcuts import get_object_or_404
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import permissions, status

from apps.assignments.models import Assignment, AssignmentStatus
from apps.responses.models import SurveyResponse, ResponseStatus
from apps.surveys.models import Survey, SurveyStatus, SurveyVersion
from apps.core.permissions import HasAllRoles
from apps.core.enums import Roles
from apps.core.utility import parse_csv, parse_int
from .services import survey_report


class SurveyReportView(APIView):
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.VIEWER]

    def get(self, request, survey_id: int):
        """
        Anonymity-suppressed aggregate report for one survey version.

        Query params:
          - slice_by: comma separated dimensions (organization, department,
            role, or a demographics question id); default none (overall only)
          - version: version number (default latest)
          - assignment_id, organization_id: optional scope
        The threshold always comes from the version's settings.
        """
        survey = get_object_or_404(Survey, pk=survey_id)
        version = request.query_params.get("version")
        try:
            report = survey_report(
                survey,
                parse_csv(request.query_params.get("slice_by")),
                version_number=parse_int(version, 0) if version else None,
                assignment_id=parse_int(request.query_params.get("assignment_id"), 0) or None,
                organization_id=parse_int(request.query_params.get("organization_id"), 0) or None,
            )
        except SurveyVersion.DoesNotExist:
            return Response({"detail": "Survey version not found"}, status=status.HTTP_404_NOT_FOUND)
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(report)


class OverallSubmissionsView(APIView):
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.VIEWER]

    def get(self, request):
        """
        Returns time series of completed submissions grouped by day or ISO week.

        Query params:
          - window: 'day' (default) or 'week'
          - days: lookback window in days (default 30)
        Response:
          { labels: [...], data: [...] }
        """
        window = (request.query_params.get("window") or "day").lower()
        days = max(1, min(365, parse_int(request.query_params.get("days", 30), 30)))

        since = timezone.now() - timedelta(days=days)
        qs = SurveyResponse.objects.filter(status=ResponseStatus.COMPLETED, completed_at__gte=since)

        trunc = TruncWeek if window == "week" else TruncDate
        series = (
            qs.annotate(bucket=trunc("completed_at"))
              .values("bucket")
              .order_by("bucket")
              .annotate(count=Count("id"))
        )
        labels = [
            (s["bucket"].date() if hasattr(s["bucket"], "date") else s["bucket"]).isoformat()
            for s in series
        ]
        data = [s["count"] for s in series]
        return Response({"labels": labels, "data": data})


class ResponsesBySurveyStatusView(APIView):
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.VIEWER]

    def get(self, request):
        """Counts responses grouped by parent survey status (draft/published/archived)."""
        series = (
            SurveyResponse.objects
            .values("assignment__survey__status")
            .annotate(count=Count("id"))
        )
        order = [SurveyStatus.DRAFT, SurveyStatus.PUBLISHED, SurveyStatus.ARCHIVED]
        map_counts = {row["assignment__survey__status"]: row["count"] for row in series}
        labels = [s.value for s in order]
        data = [map_counts.get(s, 0) for s in order]
        return Response({"labels": labels, "data": data})


class AssignmentStatusCountsView(APIView):
    permission_classes = [permissions.IsAuthenticated, HasAllRoles]
    required_roles = [Roles.VIEWER]

    def get(self, request):
        """
        Counts assignments by status.
        Optional filter: survey_id
        """
        qs = Assignment.objects.all()
        survey_id = parse_int(request.query_params.get("survey_id"), 0)
        if survey_id:
            qs = qs.filter(survey_id=survey_id)

        map_counts = {row["status"]: row["count"] for row in qs.values("status").annotate(count=Count("id"))}
        labels = list(AssignmentStatus.values)
        data = [map_counts.get(s, 0) for s in labels]
        return Response({"labels": labels, "data": data})
