"""Inventory exports: PDF (fpdf2) and JSON."""
import datetime

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from certificates import DATE_FORMAT

MAX_CELL_TEXT = 110


def _text(value):
    # Core PDF fonts only cover latin-1
    text = '' if value is None else str(value)
    if len(text) > MAX_CELL_TEXT:
        text = text[:MAX_CELL_TEXT - 3] + '...'
    return text.encode('latin-1', 'replace').decode('latin-1')


def _line(pdf, text, height=6, indent=0):
    if indent:
        pdf.cell(indent)
    pdf.cell(0, height, _text(text), new_x=XPos.LMARGIN, new_y=YPos.NEXT)


def generate_pdf_report(records, system_info, generated_at=None):
    """Certificate inventory as PDF bytes."""
    generated_at = generated_at or datetime.datetime.now(datetime.timezone.utc)

    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("Helvetica", "B", size=16)
    pdf.cell(0, 10, "Certificate Inventory Report", new_x=XPos.LMARGIN, new_y=YPos.NEXT, align='C')
    pdf.ln(5)

    pdf.set_font("Helvetica", size=10)
    _line(pdf, f"Generated: {generated_at.strftime(DATE_FORMAT)}")
    _line(pdf, f"Hostname: {system_info['hostname']}")
    _line(pdf, f"Certificate loading: {system_info['certificateEnvironmentVariable']}")
    _line(pdf, f"App Service plan: {system_info['appServicePlan']}")
    pdf.ln(5)

    pdf.set_font("Helvetica", "B", size=14)
    pdf.cell(0, 10, f"Certificates ({len(records)})", new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    if not records:
        pdf.set_font("Helvetica", size=10)
        _line(pdf, "No certificates found.")

    for record in records:
        pdf.set_font("Helvetica", "B", size=11)
        _line(pdf, f"[{record.status or 'Unknown'}] {record.name}", height=7)
        pdf.set_font("Helvetica", size=9)
        if record.error:
            _line(pdf, f"Error: {record.error}", indent=5)
        else:
            _line(pdf, f"Store: {record.store_location}/{record.store_name}", indent=5)
            _line(pdf, f"Subject: {record.subject}", indent=5)
            _line(pdf, f"Issuer: {record.issuer}", indent=5)
            _line(pdf, f"Valid: {record.valid_from} - {record.valid_until} ({record.days_left} days left)", indent=5)
            _line(pdf, f"Thumbprint: {record.thumbprint}", indent=5)
            _line(pdf, f"Private key: {'yes' if record.has_private_key else 'no'}", indent=5)
        pdf.ln(2)

    return bytes(pdf.output())


def generate_json_report(records, system_info, generated_at=None):
    generated_at = generated_at or datetime.datetime.now(datetime.timezone.utc)
    return {
        'timestamp': generated_at.isoformat(),
        'system': system_info,
        'certificates': [record.to_dict() for record in records],
    }
