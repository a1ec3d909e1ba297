import csv
import io
import re

from models import RegistrationStatus


def csv_filename(event, suffix: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", event.name).strip("_") or f"event_{event.id}"
    return f"{slug}_{suffix}.csv"


def participants_csv(registrations) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([
        'First Name', 'Last Name', 'Email', 'Contact', 'Type',
        'Organization', 'Status', 'Registered At'
    ])
    for registration in registrations:
        participant = registration.participant
        writer.writerow([
            participant.first_name or '',
            participant.last_name or '',
            participant.email,
            participant.phone or '',
            participant.participant_type or '',
            participant.college_name or '',
            registration.status,
            registration.registered_at.isoformat(),
        ])
    return output.getvalue()


def attendance_csv(registrations) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['Name', 'Email', 'Type', 'Registration Status', 'Attended', 'Check-in Time', 'Method'])
    for registration in registrations:
        participant = registration.participant
        writer.writerow([
            participant.display_name or 'N/A',
            participant.email,
            participant.participant_type or 'N/A',
            registration.status,
            'Yes' if registration.status == RegistrationStatus.ATTENDED else 'No',
            registration.attended_at.isoformat() if registration.attended_at else '',
            registration.attendance_method or '',
        ])
    return output.getvalue()
