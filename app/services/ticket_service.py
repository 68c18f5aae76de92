from __future__ import annotations

import io
import os
from datetime import datetime, timezone

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from app.core.config import settings


def _segments(offer: dict) -> list[str]:
    lines = []
    for itinerary in offer.get("itineraries") or []:
        for seg in itinerary.get("segments") or []:
            dep = seg.get("departure") or {}
            arr = seg.get("arrival") or {}
            flight = f"{seg.get('carrierCode', '')}{seg.get('number', '')}"
            lines.append(
                f"{flight:<8} {dep.get('iataCode', '?')} {dep.get('at', '')}  ->  {arr.get('iataCode', '?')} {arr.get('at', '')}"
            )
    return lines


def render_eticket_pdf_bytes(*, booking_ref: str, provider_order_id: str | None, passengers: list[dict],
                             offer: dict, total: str, currency: str) -> bytes:
    """Return an A4 PDF bytes. Pure function."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    _, h = A4

    # Header
    c.setFont("Helvetica-Bold", 18)
    c.drawString(40, h - 60, "JT Travels E-Ticket")
    c.setFont("Helvetica", 11)
    c.drawString(40, h - 80, f"Booking Reference: {booking_ref}")
    if provider_order_id:
        c.drawString(40, h - 96, f"Airline Order: {provider_order_id}")

    y = h - 130
    c.setFont("Helvetica-Bold", 12)
    c.drawString(40, y, "Passengers")
    c.setFont("Helvetica", 11)
    for p in passengers:
        y -= 18
        c.drawString(40, y, f"{p.get('firstName', '')} {p.get('lastName', '')}  ({p.get('dateOfBirth', '')})")

    y -= 37
    c.setFont("Helvetica-Bold", 12)
    c.drawString(40, y, "Flights")
    c.setFont("Courier", 10)
    for line in _segments(offer) or ["(itinerary not available)"]:
        y -= 16
        c.drawString(40, y, line)

    y -= 38
    c.setFont("Helvetica-Bold", 12)
    c.drawString(40, y, "Fare")
    c.setFont("Helvetica", 11)
    c.drawString(40, y - 18, f"Total: {total} {currency}")

    # Footer
    c.setFont("Helvetica", 9)
    c.drawString(40, 40, "Present this e-ticket with a valid travel document at check-in.")
    c.drawString(40, 26, f"Generated: {datetime.now(timezone.utc).isoformat()}")

    c.showPage()
    c.save()
    return buf.getvalue()


def store_eticket_pdf(*, booking_ref: str, pdf_bytes: bytes) -> str:
    """Write the ticket under TICKET_LOCAL_DIR and return its public URL."""
    base = settings.TICKET_LOCAL_DIR or "./data/tickets"
    os.makedirs(base, exist_ok=True)
    with open(os.path.join(base, f"{booking_ref}.pdf"), "wb") as f:
        f.write(pdf_bytes)
    return eticket_url(booking_ref)


def eticket_url(booking_ref: str) -> str:
    return f"{settings.ETICKET_BASE_URL.rstrip('/')}/{booking_ref}.pdf"
