"""
Report Generator Module - Training Attendance Tracker

This module exports the attendance of a single session as CSV, PDF or Excel.
Every format carries the same three parts:

- session header (session, training, date, time)
- summary counts (Total, Present, Late, Absent, Pending)
- one row per participant (Name, Email, Status, Join Time)

Exports are built in memory and returned as bytes together with a filename
of the form ``attendance-<session title>-<session date>.<ext>``.
"""

import csv
import io
import re
import logging
from datetime import datetime
from typing import Dict, List, Any

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer

from training_attendance.modules.exceptions import ValidationError, NotFoundError

PARTICIPANT_COLUMNS = ['Name', 'Email', 'Status', 'Join Time']

EXPORT_FORMATS = {
    'csv': ('csv', 'text/csv'),
    'pdf': ('pdf', 'application/pdf'),
    'xlsx': ('xlsx', 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'),
}


def export_filename(session_title: str, session_date: str, extension: str) -> str:
    """Build ``attendance-<title>-<date>.<ext>``, dropping characters unsafe in filenames."""
    safe_title = re.sub(r'[\\/:*?"<>|]+', '-', session_title or 'session').strip()
    return f"attendance-{safe_title}-{session_date}.{extension}"


def _format_join_time(value) -> str:
    if not value:
        return '-'
    try:
        return datetime.fromisoformat(str(value)).strftime('%Y-%m-%d %H:%M')
    except ValueError:
        return str(value)


class ReportGenerator:
    """
    Session attendance exports.
    """

    def __init__(self, database_manager, attendance_manager):
        """
        Initialize the report generator.

        Args:
            database_manager: Database manager instance
            attendance_manager: AttendanceManager providing rosters and summaries
        """
        self.db = database_manager
        self.attendance_manager = attendance_manager
        self.logger = logging.getLogger(__name__)

        self.supported_formats = list(EXPORT_FORMATS)

    def build_session_export(self, session_id: str) -> Dict[str, Any]:
        """
        Collect everything an export needs for one session.

        Returns:
            Dict[str, Any]: ``session``, ``participants`` and ``stats``

        Raises:
            NotFoundError: Unknown session
        """
        session = self.db.execute_query(
            """SELECT s.*, t.title AS training_title
               FROM sessions s
               LEFT JOIN trainings t ON t.id = s.training_id
               WHERE s.id = ?""",
            (session_id,),
            fetch_all=False
        )
        if not session:
            raise NotFoundError('Session not found.')

        roster = self.attendance_manager.get_session_roster(session_id)
        summary = self.attendance_manager.get_attendance_summary(session_id)

        participants = [
            {
                'Name': row.get('full_name') or '',
                'Email': row.get('email') or '',
                'Status': (row.get('status') or 'pending').capitalize(),
                'Join Time': _format_join_time(row.get('join_time'))
            }
            for row in roster
        ]

        return {
            'session': {
                'title': session['title'],
                'training': session['training_title'] or '-',
                'date': session['scheduled_date'],
                'time': f"{session['start_time'][:5]} - {session['end_time'][:5]}"
            },
            'participants': participants,
            'stats': {
                'Total': summary['total'],
                'Present': summary['present'],
                'Late': summary['late'],
                'Absent': summary['absent'],
                'Pending': summary['pending']
            }
        }

    def export_session(self, session_id: str, output_format: str = 'csv') -> Dict[str, Any]:
        """
        Export a session's attendance.

        Args:
            session_id (str): Session to export
            output_format (str): One of csv, pdf, xlsx

        Returns:
            Dict[str, Any]: ``success``, ``filename``, ``content`` (bytes) and ``mimetype``

        Raises:
            ValidationError: Unsupported format
            NotFoundError: Unknown session
        """
        output_format = (output_format or 'csv').lower()
        if output_format == 'excel':
            output_format = 'xlsx'
        if output_format not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format: {output_format}")

        data = self.build_session_export(session_id)
        extension, mimetype = EXPORT_FORMATS[output_format]

        if output_format == 'csv':
            content = self._generate_csv(data)
        elif output_format == 'pdf':
            content = self._generate_pdf(data)
        else:
            content = self._generate_excel(data)

        filename = export_filename(data['session']['title'], data['session']['date'], extension)
        self.logger.info(f"Exported session {session_id} as {filename} ({len(content)} bytes)")

        return {
            'success': True,
            'filename': filename,
            'content': content,
            'mimetype': mimetype,
            'size': len(content)
        }

    def _csv_rows(self, data: Dict[str, Any]) -> List[List[str]]:
        session = data['session']
        rows = [
            ['Session Attendance Report'],
            ['Session:', session['title']],
            ['Training:', session['training']],
            ['Date:', session['date']],
            ['Time:', session['time']],
            [''],
            ['Summary'],
            ['Total Participants:', str(data['stats']['Total'])],
        ]
        rows.extend([f"{label}:", str(data['stats'][label])] for label in ('Present', 'Late', 'Absent', 'Pending'))
        rows.append([''])
        rows.append(PARTICIPANT_COLUMNS)
        rows.extend([p[column] for column in PARTICIPANT_COLUMNS] for p in data['participants'])
        return rows

    def _generate_csv(self, data: Dict[str, Any]) -> bytes:
        width = len(PARTICIPANT_COLUMNS)
        rows = [row + [''] * (width - len(row)) for row in self._csv_rows(data)]
        df = pd.DataFrame(rows)
        return df.to_csv(index=False, header=False, quoting=csv.QUOTE_ALL).encode('utf-8')

    def _generate_excel(self, data: Dict[str, Any]) -> bytes:
        buffer = io.BytesIO()
        session = data['session']

        with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
            df_participants = pd.DataFrame(data['participants'], columns=PARTICIPANT_COLUMNS)
            df_participants.to_excel(writer, sheet_name='Attendance', index=False)

            df_session = pd.DataFrame([
                {'Field': 'Session', 'Value': session['title']},
                {'Field': 'Training', 'Value': session['training']},
                {'Field': 'Date', 'Value': session['date']},
                {'Field': 'Time', 'Value': session['time']},
            ])
            df_session.to_excel(writer, sheet_name='Session', index=False)

            df_stats = pd.DataFrame([data['stats']])
            df_stats.to_excel(writer, sheet_name='Summary', index=False)

        return buffer.getvalue()

    def _generate_pdf(self, data: Dict[str, Any]) -> bytes:
        buffer = io.BytesIO()
        session = data['session']
        generated_on = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

        doc = SimpleDocTemplate(buffer, pagesize=A4, title='Session Attendance Report')
        elements = []
        styles = getSampleStyleSheet()

        title_style = ParagraphStyle(
            'ReportTitle',
            parent=styles['Heading1'],
            fontSize=18,
            spaceAfter=20
        )
        elements.append(Paragraph('Session Attendance Report', title_style))

        for label, value in (('Session', session['title']), ('Training', session['training']),
                             ('Date', session['date']), ('Time', session['time'])):
            elements.append(Paragraph(f"{label}: {value}", styles['Normal']))
        elements.append(Spacer(1, 16))

        elements.append(Paragraph('Summary', styles['Heading2']))
        stats_table = Table([list(data['stats'].keys()), [str(v) for v in data['stats'].values()]])
        stats_table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.lightgrey),
            ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.grey)
        ]))
        elements.append(stats_table)
        elements.append(Spacer(1, 16))

        table_data = [PARTICIPANT_COLUMNS]
        table_data.extend([p[column] for column in PARTICIPANT_COLUMNS] for p in data['participants'])
        participants_table = Table(table_data, repeatRows=1)
        participants_table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#3B82F6')),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, colors.HexColor('#F5F7FA')]),
            ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
            ('FONTSIZE', (0, 0), (-1, -1), 9),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 4)
        ]))
        elements.append(participants_table)

        def draw_footer(canvas, document):
            canvas.saveState()
            canvas.setFont('Helvetica', 8)
            canvas.setFillColor(colors.grey)
            canvas.drawString(document.leftMargin, 20,
                              f"Generated on {generated_on} - Page {document.page}")
            canvas.restoreState()

        doc.build(elements, onFirstPage=draw_footer, onLaterPages=draw_footer)
        return buffer.getvalue()
