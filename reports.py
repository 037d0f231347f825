"""
Printable PDF of a clinical case with its evaluation and report QR code.
"""
import io
from typing import Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from database import as_utc


def _fmt_date(value) -> str:
    value = as_utc(value)
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "-"


def _table(rows, col_widths=None) -> Table:
    rows = [["-" if cell is None else str(cell) for cell in row] for row in rows]
    table = Table(rows, colWidths=col_widths, hAlign="LEFT")
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#e8eef5")),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
            ]
        )
    )
    return table


def render_case_report(case: dict, student_email: Optional[str] = None, reviewer_email: Optional[str] = None,
                       qr_png: Optional[bytes] = None) -> bytes:
    styles = getSampleStyleSheet()
    buf = io.BytesIO()
    pdf = SimpleDocTemplate(buf, pagesize=A4, title=case.get("case_number") or "Case report")
    story = [
        Paragraph(f"{escape(case.get('case_number') or '')}: {escape(case.get('title') or '')}", styles["Title"]),
        _table(
            [
                ["Status", "Student", "Reviewer", "Created"],
                [case.get("status"), student_email or "-", reviewer_email or "-", _fmt_date(case.get("created_at"))],
            ]
        ),
        Spacer(1, 0.5 * cm),
    ]

    patient = case.get("patient_info") or {}
    if patient:
        story.append(Paragraph("Patient information", styles["Heading2"]))
        story.append(
            _table(
                [
                    ["Age", "Gender", "Weight", "Height", "Diagnosis code"],
                    [patient.get("age") or "-", patient.get("gender") or "-", patient.get("weight") or "-",
                     patient.get("height") or "-", patient.get("diagnosis_code") or "-"],
                ]
            )
        )
        if patient.get("chief_complaint"):
            story.append(Paragraph(f"<b>Chief complaint:</b> {escape(patient['chief_complaint'])}", styles["Normal"]))

    medications = case.get("medication_history") or []
    if medications:
        story.append(Paragraph("Medication history", styles["Heading2"]))
        rows = [["Name", "Dosage", "Frequency", "Duration", "Purpose"]]
        rows += [[m.get("name"), m.get("dosage") or "", m.get("frequency") or "", m.get("duration") or "",
                  m.get("purpose") or ""] for m in medications]
        story.append(_table(rows))

    labs = case.get("lab_values") or []
    if labs:
        story.append(Paragraph("Laboratory values", styles["Heading2"]))
        rows = [["Test", "Value", "Unit", "Reference range"]]
        rows += [[lab.get("name"), lab.get("value") or "", lab.get("unit") or "", lab.get("reference_range") or ""]
                 for lab in labs]
        story.append(_table(rows))

    for heading, key in (("Assessment", "assessment"), ("Plan", "plan")):
        if case.get(key):
            story.append(Paragraph(heading, styles["Heading2"]))
            story.append(Paragraph(escape(case[key]), styles["Normal"]))

    evaluation = case.get("evaluation")
    if evaluation:
        story.append(Paragraph("Evaluation", styles["Heading2"]))
        story.append(
            Paragraph(
                f"<b>Score:</b> {evaluation.get('score')} / {evaluation.get('max_score', 100)} "
                f"&nbsp; <b>Evaluated:</b> {_fmt_date(evaluation.get('evaluated_at'))}",
                styles["Normal"],
            )
        )
        if evaluation.get("feedback"):
            story.append(Paragraph(escape(evaluation["feedback"]), styles["Normal"]))
        rubric = evaluation.get("rubric_items") or []
        if rubric:
            rows = [["Criterion", "Score", "Max", "Comments"]]
            rows += [[r.get("criterion"), r.get("score"), r.get("max_score") or "", r.get("comments") or ""]
                     for r in rubric]
            story.append(_table(rows))

    if qr_png:
        story.append(Spacer(1, 0.5 * cm))
        story.append(Paragraph("Scan to verify this report", styles["Italic"]))
        story.append(Image(io.BytesIO(qr_png), width=4 * cm, height=4 * cm, hAlign="LEFT"))

    pdf.build(story)
    return buf.getvalue()
