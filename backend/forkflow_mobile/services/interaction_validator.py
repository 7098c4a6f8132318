"""
Interaction validation for the food-service CRM.
Errors block persistence; warnings are surfaced to the field rep but never
block, so data capture keeps working with poor GPS or large attachments.
"""
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .file_transfer import AttachmentFile

LATITUDE_BOUNDS = (-90.0, 90.0)
LONGITUDE_BOUNDS = (-180.0, 180.0)

FIELD_LIMITS = {
    "subject": 200,
    "description": 2000,
    "outcome": 1000,
    "follow_up_notes": 500,
    "location_notes": 200,
}

REQUIRED_FIELDS = ("organization_id", "type_id", "subject")
TEXT_FIELDS = ("subject", "description", "outcome", "follow_up_notes", "location_notes")
BOOLEAN_FIELDS = ("is_completed", "follow_up_required")

# Interaction types where a rep is expected to be on site
GPS_REQUIRED_TYPES = {"in_person", "demo"}

MAX_DURATION_MINUTES = 1440
MAX_ATTACHMENTS = 10
MOBILE_DESCRIPTION_LIMIT = 500
MIN_SUBJECT_LENGTH = 3

ATTACHMENT_MAX_BYTES = 10 * 1024 * 1024
ATTACHMENT_SLOW_BYTES = 2 * 1024 * 1024
ATTACHMENT_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "application/pdf",
    "text/plain",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


@dataclass
class ValidationIssue:
    field: str
    message: str
    code: str


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)


@dataclass
class InteractionTypeSetting:
    id: Any
    key: str
    label: str
    active: bool = True
    category: str = "interaction_type"
    gps_expected: Optional[bool] = None

    def __post_init__(self):
        if self.gps_expected is None:
            self.gps_expected = self.key in GPS_REQUIRED_TYPES


class _InvalidDate(Exception):
    pass


_FRACTION = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")


def _normalise_fraction(value: str) -> str:
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    return _FRACTION.sub(lambda m: "%s.%s" % (m.group(1), m.group(2)[:6].ljust(6, "0")), value)


def _parse_date(value: Union[str, date, datetime]) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(_normalise_fraction(value.strip().replace("Z", "+00:00")))
        except ValueError:
            raise _InvalidDate(value)
    else:
        raise _InvalidDate(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _shift_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:  # 29 February
        return moment.replace(year=moment.year + years, day=28)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class InteractionValidator:
    """
    Rule engine for interaction records.

    Records are plain dicts with snake_case keys (``organization_id``,
    ``type_id``, ``subject``, ``latitude``, ``follow_up_date``, ...). The only
    state is the interaction-type configuration set through ``update_settings``.
    """

    def __init__(self, now: Optional[Callable[[], datetime]] = None):
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.interaction_types: Dict[Any, InteractionTypeSetting] = {}

    def update_settings(self, settings: Iterable[Union[InteractionTypeSetting, Dict]]) -> None:
        """Load interaction-type settings; entries of other categories are ignored."""
        types = {}
        for s in settings:
            if isinstance(s, dict):
                s = InteractionTypeSetting(
                    id=s.get("id"),
                    key=s.get("key", ""),
                    label=s.get("label", s.get("key", "")),
                    active=bool(s.get("active", True)),
                    category=s.get("category", "interaction_type"),
                    gps_expected=s.get("gps_expected"),
                )
            if s.category == "interaction_type":
                types[s.id] = s
        self.interaction_types = types

    # ------------------------------------------------------------------
    # Sanitizing
    # ------------------------------------------------------------------

    def sanitize_interaction(self, interaction: Dict) -> Dict:
        """Return a cleaned copy: trimmed text, real booleans, 6-decimal GPS, whole-minute duration."""
        sanitized = dict(interaction)

        for name in TEXT_FIELDS:
            if isinstance(sanitized.get(name), str):
                sanitized[name] = sanitized[name].strip()

        for name in BOOLEAN_FIELDS:
            sanitized[name] = bool(sanitized.get(name))

        for name in ("latitude", "longitude"):
            if _is_number(sanitized.get(name)):
                sanitized[name] = round(float(sanitized[name]), 6)

        if _is_number(sanitized.get("duration")):
            sanitized["duration"] = max(0, math.floor(sanitized["duration"]))

        return sanitized

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_interaction(self, interaction: Dict) -> ValidationResult:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        self._validate_required_fields(interaction, errors)
        self._validate_interaction_type(interaction, errors, warnings)
        self._validate_gps_coordinates(interaction, errors, warnings)
        self._validate_dates(interaction, errors, warnings)
        self._validate_field_lengths(interaction, errors)
        self._validate_business_rules(interaction, errors, warnings)
        self._validate_mobile_constraints(interaction, warnings)

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _validate_required_fields(self, interaction: Dict, errors: List[ValidationIssue]) -> None:
        for name in REQUIRED_FIELDS:
            value = interaction.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors.append(ValidationIssue(name, f"{name} is required", "REQUIRED_FIELD_MISSING"))

    def _validate_interaction_type(
        self, interaction: Dict, errors: List[ValidationIssue], warnings: List[ValidationIssue]
    ) -> None:
        type_id = interaction.get("type_id")
        if type_id is None:
            return

        try:
            itype = self.interaction_types.get(type_id)
        except TypeError:
            itype = None
        if itype is None:
            errors.append(ValidationIssue("type_id", "Invalid interaction type", "INVALID_INTERACTION_TYPE"))
            return

        if not itype.active:
            warnings.append(ValidationIssue("type_id", "Interaction type is inactive", "INACTIVE_INTERACTION_TYPE"))

        if itype.gps_expected and (
            interaction.get("latitude") is None or interaction.get("longitude") is None
        ):
            warnings.append(ValidationIssue(
                "latitude",
                f"GPS coordinates recommended for {itype.label} interactions",
                "GPS_RECOMMENDED",
            ))

    def _validate_gps_coordinates(
        self, interaction: Dict, errors: List[ValidationIssue], warnings: List[ValidationIssue]
    ) -> None:
        lat = interaction.get("latitude")
        lon = interaction.get("longitude")

        if (lat is None) != (lon is None):
            errors.append(ValidationIssue(
                "latitude",
                "Both latitude and longitude must be provided together",
                "INCOMPLETE_GPS_COORDINATES",
            ))
            return
        if lat is None:
            return

        lat_ok = _is_number(lat) and LATITUDE_BOUNDS[0] <= lat <= LATITUDE_BOUNDS[1]
        lon_ok = _is_number(lon) and LONGITUDE_BOUNDS[0] <= lon <= LONGITUDE_BOUNDS[1]
        if not lat_ok:
            errors.append(ValidationIssue(
                "latitude",
                f"Latitude must be between {LATITUDE_BOUNDS[0]:g} and {LATITUDE_BOUNDS[1]:g}",
                "INVALID_LATITUDE",
            ))
        if not lon_ok:
            errors.append(ValidationIssue(
                "longitude",
                f"Longitude must be between {LONGITUDE_BOUNDS[0]:g} and {LONGITUDE_BOUNDS[1]:g}",
                "INVALID_LONGITUDE",
            ))

        # (0, 0) is in the Gulf of Guinea; almost always an unset default
        if lat_ok and lon_ok and lat == 0 and lon == 0:
            warnings.append(ValidationIssue(
                "latitude",
                "GPS coordinates appear to be default values (0,0)",
                "SUSPICIOUS_GPS_COORDINATES",
            ))

    def _validate_dates(
        self, interaction: Dict, errors: List[ValidationIssue], warnings: List[ValidationIssue]
    ) -> None:
        now = self._now()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        one_year_ago = _shift_years(now, -1)
        one_year_ahead = _shift_years(now, 1)

        def parse(name: str, label: str) -> Optional[datetime]:
            raw = interaction.get(name)
            if not raw:
                return None
            try:
                return _parse_date(raw)
            except _InvalidDate:
                errors.append(ValidationIssue(name, f"Invalid {label} date format", "INVALID_DATE_FORMAT"))
                return None

        scheduled = parse("scheduled_date", "scheduled")
        completed = parse("completed_date", "completed")
        follow_up = parse("follow_up_date", "follow-up")

        if scheduled is not None:
            if scheduled < one_year_ago:
                warnings.append(ValidationIssue(
                    "scheduled_date", "Scheduled date is more than a year ago", "OLD_SCHEDULED_DATE"
                ))
            if scheduled > one_year_ahead:
                warnings.append(ValidationIssue(
                    "scheduled_date", "Scheduled date is more than a year in the future", "FUTURE_SCHEDULED_DATE"
                ))

        if completed is not None:
            if completed > now:
                errors.append(ValidationIssue(
                    "completed_date", "Completed date cannot be in the future", "FUTURE_COMPLETED_DATE"
                ))
            if scheduled is not None and completed < scheduled:
                warnings.append(ValidationIssue(
                    "completed_date", "Completed date is before scheduled date", "COMPLETED_BEFORE_SCHEDULED"
                ))

        if follow_up is not None and follow_up <= now:
            warnings.append(ValidationIssue(
                "follow_up_date", "Follow-up date should be in the future", "PAST_FOLLOWUP_DATE"
            ))

    def _validate_field_lengths(self, interaction: Dict, errors: List[ValidationIssue]) -> None:
        for name, limit in FIELD_LIMITS.items():
            value = interaction.get(name)
            if isinstance(value, str) and len(value) > limit:
                errors.append(ValidationIssue(name, f"{name} cannot exceed {limit} characters", "FIELD_TOO_LONG"))

    def _validate_business_rules(
        self, interaction: Dict, errors: List[ValidationIssue], warnings: List[ValidationIssue]
    ) -> None:
        if interaction.get("is_completed") and not interaction.get("completed_date"):
            warnings.append(ValidationIssue(
                "completed_date",
                "Completed interactions should have a completion date",
                "MISSING_COMPLETION_DATE",
            ))

        if interaction.get("follow_up_required") and not interaction.get("follow_up_date"):
            errors.append(ValidationIssue(
                "follow_up_date",
                "Follow-up date is required when follow-up is needed",
                "MISSING_FOLLOWUP_DATE",
            ))

        duration = interaction.get("duration")
        if duration is not None:
            if not _is_number(duration) or duration < 0:
                errors.append(ValidationIssue("duration", "Duration cannot be negative", "INVALID_DURATION"))
            elif duration > MAX_DURATION_MINUTES:
                warnings.append(ValidationIssue(
                    "duration", "Duration exceeds 24 hours - please verify", "LONG_DURATION"
                ))

        attachments = interaction.get("attachments") or []
        if not isinstance(attachments, (list, tuple)):
            errors.append(ValidationIssue(
                "attachments", "Attachments must be a list", "INVALID_ATTACHMENTS"
            ))
        elif len(attachments) > MAX_ATTACHMENTS:
            warnings.append(ValidationIssue(
                "attachments", "Large number of attachments may affect performance", "MANY_ATTACHMENTS"
            ))

    def _validate_mobile_constraints(self, interaction: Dict, warnings: List[ValidationIssue]) -> None:
        description = interaction.get("description")
        if isinstance(description, str) and len(description) > MOBILE_DESCRIPTION_LIMIT:
            warnings.append(ValidationIssue(
                "description",
                "Long descriptions may be difficult to read on mobile devices",
                "MOBILE_USABILITY_CONCERN",
            ))

        subject = interaction.get("subject")
        if not isinstance(subject, str) or len(subject.strip()) < MIN_SUBJECT_LENGTH:
            warnings.append(ValidationIssue(
                "subject",
                "Clear subjects help with mobile interaction management",
                "MOBILE_WORKFLOW_RECOMMENDATION",
            ))

    def validate_attachment(self, file: AttachmentFile) -> ValidationResult:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        if file.size > ATTACHMENT_MAX_BYTES:
            errors.append(ValidationIssue("attachment", "File size cannot exceed 10MB", "FILE_TOO_LARGE"))

        if file.content_type not in ATTACHMENT_TYPES:
            errors.append(ValidationIssue("attachment", "File type not supported", "UNSUPPORTED_FILE_TYPE"))

        if file.size > ATTACHMENT_SLOW_BYTES:
            warnings.append(ValidationIssue(
                "attachment", "Large files may upload slowly on mobile networks", "MOBILE_UPLOAD_WARNING"
            ))

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
