from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Iterable, Optional, Tuple

from clinic.config import APP_NAME, APP_URL


def _fmt_date(value: datetime) -> str:
    return value.strftime("%A, %B %d, %Y")


def _fmt_time(value: datetime) -> str:
    return value.strftime("%H:%M")


def _wrap(title: str, body: str) -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="color: #2563eb;">{escape(title)}</h2>
        {body}
        <br>
        <p>Best regards,<br>{escape(APP_NAME)}</p>
    </div>
    """


def appointment_reminder(
    appointment_id: str,
    patient_name: str,
    date: datetime,
    service_name: str,
    therapist_name: str,
    location: str,
) -> Tuple[str, str]:
    subject = f"Reminder: your appointment on {_fmt_date(date)}"
    confirm_url = f"{APP_URL}/appointments/{appointment_id}/confirm"
    body = f"""
        <p>Hello {escape(patient_name)},</p>
        <p>This is a reminder of your appointment today.</p>
        <ul>
            <li><b>Date:</b> {_fmt_date(date)}</li>
            <li><b>Time:</b> {_fmt_time(date)}</li>
            <li><b>Service:</b> {escape(service_name)}</li>
            <li><b>Therapist:</b> {escape(therapist_name)}</li>
            <li><b>Location:</b> {escape(location)}</li>
        </ul>
        <p><a href="{confirm_url}">Confirm your attendance</a></p>
        <p>Please arrive 10 minutes early.</p>
    """
    return subject, _wrap("Appointment reminder", body)


def satisfaction_survey(
    appointment_id: str,
    patient_name: str,
    date: datetime,
    services: Iterable[str],
    therapist_name: Optional[str] = None,
) -> Tuple[str, str]:
    subject = "How was your visit? Tell us in one minute"
    survey_url = f"{APP_URL}/survey/{appointment_id}"
    services_html = "".join(f"<li>{escape(name)}</li>" for name in services)
    therapist_line = f"<p><b>Therapist:</b> {escape(therapist_name)}</p>" if therapist_name else ""
    body = f"""
        <p>Hello {escape(patient_name)},</p>
        <p>Thank you for visiting us on {_fmt_date(date)}.</p>
        {therapist_line}
        <ul>{services_html}</ul>
        <p><a href="{survey_url}">Rate your experience</a></p>
    """
    return subject, _wrap("Satisfaction survey", body)


def appointment_confirmation(
    appointment_id: str,
    patient_name: str,
    date: datetime,
    services: Iterable[str],
    therapist_name: Optional[str] = None,
) -> Tuple[str, str]:
    subject = f"Appointment booked for {_fmt_date(date)}"
    confirm_url = f"{APP_URL}/appointments/{appointment_id}/confirm"
    services_html = "".join(f"<li>{escape(name)}</li>" for name in services)
    body = f"""
        <p>Dear {escape(patient_name)},</p>
        <p>Your appointment has been booked for <b>{_fmt_date(date)} at {_fmt_time(date)}</b>.</p>
        <p><b>Therapist:</b> {escape(therapist_name or "To be assigned")}</p>
        <ul>{services_html}</ul>
        <p><a href="{confirm_url}">Confirm your appointment</a></p>
    """
    return subject, _wrap("Appointment booked", body)


def therapist_activation(name: str, token: str, hours_valid: int) -> Tuple[str, str]:
    subject = f"Activate your {APP_NAME} account"
    url = f"{APP_URL}/activate?token={token}"
    body = f"""
        <p>Hello {escape(name)},</p>
        <p>An account has been created for you. Set your password to activate it:</p>
        <p><a href="{url}">Activate account</a></p>
        <p>This link expires in {hours_valid} hours.</p>
    """
    return subject, _wrap("Welcome", body)
