from __future__ import annotations

import csv
from datetime import datetime
from io import BytesIO, StringIO
from zoneinfo import ZoneInfo

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from timeguard.models import Profile, Site, TimeEntry
from timeguard.services.reports import HoursReport, completed_hours, display_name

TIMESHEET_HEADERS = ["Date", "Employee", "Site", "Clock In", "Clock Out", "Hours", "Status"]

HEADER_FILL = PatternFill(fill_type="solid", fgColor="0B4F73")
ZEBRA_FILL = PatternFill(fill_type="solid", fgColor="F7FBFE")
ACTIVE_FILL = PatternFill(fill_type="solid", fgColor="E6F4EA")
INVALID_FILL = PatternFill(fill_type="solid", fgColor="FDE2E4")
SUMMARY_FILL = PatternFill(fill_type="solid", fgColor="E9F1F7")

HEADER_FONT = Font(bold=True, color="FFFFFF")
BOLD_FONT = Font(bold=True, color="0F172A")

THIN_SIDE = Side(style="thin", color="D5E2EC")
THIN_BORDER = Border(left=THIN_SIDE, right=THIN_SIDE, top=THIN_SIDE, bottom=THIN_SIDE)


def timesheet_rows(
    entries: list[TimeEntry],
    *,
    profiles: dict[int, Profile],
    sites: dict[int, Site],
    tz: ZoneInfo,
) -> list[list[str]]:
    rows: list[list[str]] = []
    for entry in entries:
        clock_in_local = entry.clock_in_time.astimezone(tz)
        hours = completed_hours(entry)
        site = sites.get(entry.site_id)
        rows.append(
            [
                clock_in_local.strftime("%Y-%m-%d"),
                display_name(profiles.get(entry.employee_id)),
                site.name if site is not None else "Unknown",
                clock_in_local.strftime("%H:%M"),
                entry.clock_out_time.astimezone(tz).strftime("%H:%M") if entry.clock_out_time else "Active",
                f"{hours:.2f}" if hours is not None else "N/A",
                entry.status.value,
            ]
        )
    return rows


def timesheet_filename(now_local: datetime, extension: str) -> str:
    return f"timesheet-{now_local.strftime('%Y-%m-%d')}.{extension}"


def build_timesheet_csv(rows: list[list[str]]) -> str:
    stream = StringIO()
    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow(TIMESHEET_HEADERS)
    writer.writerows(rows)
    return stream.getvalue()


def _style_header(ws: Worksheet, row: int = 1) -> None:
    for cell in ws[row]:
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
        cell.border = THIN_BORDER


def _auto_width(ws: Worksheet) -> None:
    for column_cells in ws.iter_cols(min_row=1, max_row=ws.max_row, min_col=1, max_col=ws.max_column):
        max_len = 0
        col_letter = get_column_letter(column_cells[0].column)
        for cell in column_cells:
            value = "" if cell.value is None else str(cell.value)
            max_len = max(max_len, len(value))
        ws.column_dimensions[col_letter].width = min(max_len + 2, 45)


def build_timesheet_xlsx_bytes(rows: list[list[str]], *, report: HoursReport | None = None) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Timesheet"
    ws.append(TIMESHEET_HEADERS)
    _style_header(ws)

    status_col = TIMESHEET_HEADERS.index("Status") + 1
    for idx, row in enumerate(rows, start=2):
        ws.append(row)
        status_value = ws.cell(row=idx, column=status_col).value
        fill = None
        if status_value == "active":
            fill = ACTIVE_FILL
        elif status_value == "invalid":
            fill = INVALID_FILL
        elif idx % 2 == 0:
            fill = ZEBRA_FILL
        for cell in ws[idx]:
            cell.border = THIN_BORDER
            if fill is not None:
                cell.fill = fill

    if rows:
        ws.auto_filter.ref = f"A1:{get_column_letter(ws.max_column)}{len(rows) + 1}"
    ws.freeze_panes = "A2"
    _auto_width(ws)

    if report is not None:
        summary = wb.create_sheet("Summary")
        summary.append(["Employee", "Hours", "Expected", "Variance"])
        _style_header(summary)
        for item in report.by_employee:
            summary.append([item.employee_name, item.hours, item.expected_hours, item.variance_hours])
        summary.append([])
        site_header_row = summary.max_row + 1
        summary.append(["Site", "Hours"])
        for cell in summary[site_header_row]:
            cell.font = BOLD_FONT
            cell.fill = SUMMARY_FILL
            cell.border = THIN_BORDER
        for item in report.by_site:
            summary.append([item.site_name, item.hours])
        _auto_width(summary)

    stream = BytesIO()
    wb.save(stream)
    return stream.getvalue()
