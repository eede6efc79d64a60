"""
Excel / CSV / PDF downloads of monthly reports and per-user reports.
"""
import io
from datetime import datetime
from typing import Tuple

import pandas as pd
from fpdf import FPDF

from accounting import status_of, to_currency
from timestamps import to_datetime

APP_TITLE = 'Delivery Ledger'
CURRENCY = 'EGP'

MIMETYPES = {
    'excel': ('application/vnd.openxmlformats-officedocument.spreadsheetml.sheet', 'xlsx'),
    'csv': ('text/csv', 'csv'),
    'pdf': ('application/pdf', 'pdf'),
}


def _fmt_dt(value) -> str:
    dt = to_datetime(value)
    return dt.strftime('%Y-%m-%d %H:%M') if dt else ''


def monthly_report_frames(report: dict) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """(summary, wallets) tables of a MonthlyReport."""
    summary = pd.DataFrame([
        ('Month', report.get('monthLabel', '')),
        ('Report ID', report.get('id', '')),
        ('Archived At', _fmt_dt(report.get('createdAt'))),
        ('Archived By', report.get('archivedBy', '')),
        ('Archived Orders', report.get('archivedOrdersCount', 0)),
        ('Delivered Orders', report.get('deliveredOrdersCount', 0)),
        ('Cancelled Orders', report.get('cancelledOrdersCount', 0)),
        ('Total Revenue', to_currency(report.get('totalRevenue', 0))),
        ('Total Delivery Fees', to_currency(report.get('totalDeliveryFees', 0))),
        ('App Profit', to_currency(report.get('totalAppProfit', 0))),
        ('Admin Share', to_currency(report.get('adminShare', 0))),
        ('Driver Payouts', to_currency(report.get('totalDriverPayouts', 0))),
        ('Last Regular Order', report.get('lastRegularOrderId', '')),
        ('Last Shopping Order', report.get('lastShoppingOrderId', '')),
    ], columns=['Metric', 'Value'])

    rows = [
        {
            'DRIVER_ID': driver_id,
            'NAME': snap.get('name', ''),
            'UNPAID_ORDERS': snap.get('ordersCount', 0),
            'BALANCE': to_currency(snap.get('balance', 0)),
        }
        for driver_id, snap in sorted((report.get('walletSnapshots') or {}).items())
    ]
    wallets = pd.DataFrame(rows, columns=['DRIVER_ID', 'NAME', 'UNPAID_ORDERS', 'BALANCE'])
    return summary, wallets


def user_report_frame(report: dict) -> pd.DataFrame:
    rows = [
        {
            'ORDER_ID': o.get('id', ''),
            'STATUS': status_of(o) or '',
            'MERCHANT': o.get('merchantName', ''),
            'TOTAL_PRICE': to_currency(o.get('totalPrice') or 0),
            'DELIVERY_FEE': to_currency(o.get('deliveryFee') or 0),
            'CREATED_AT': _fmt_dt(o.get('createdAt')),
            'DELIVERED_AT': _fmt_dt(o.get('deliveredAt')),
        }
        for o in report.get('orders', [])
    ]
    return pd.DataFrame(rows, columns=['ORDER_ID', 'STATUS', 'MERCHANT', 'TOTAL_PRICE',
                                       'DELIVERY_FEE', 'CREATED_AT', 'DELIVERED_AT'])


# ==================================================
# WRITERS
# ==================================================
def _excel(title: str, sheets) -> bytes:
    output = io.BytesIO()
    with pd.ExcelWriter(output, engine='xlsxwriter') as writer:
        workbook = writer.book
        title_fmt = workbook.add_format({
            'bold': True, 'font_color': 'white', 'bg_color': '#122D69',
            'align': 'center', 'valign': 'vcenter', 'font_size': 14, 'border': 1,
        })
        header_fmt = workbook.add_format({
            'bold': True, 'font_color': 'white', 'bg_color': '#122D69',
            'align': 'center', 'valign': 'vcenter', 'border': 1,
        })
        data_start_row = 2
        for sheet_name, df in sheets:
            df.to_excel(writer, sheet_name=sheet_name, index=False, startrow=data_start_row)
            worksheet = writer.sheets[sheet_name]
            last_col = max(len(df.columns) - 1, 1)
            worksheet.merge_range(0, 0, 0, last_col, title, title_fmt)
            for col_num, value in enumerate(df.columns.values):
                worksheet.write(data_start_row, col_num, value, header_fmt)
                worksheet.set_column(col_num, col_num, 20)
            worksheet.freeze_panes(data_start_row + 1, 0)
    return output.getvalue()


def _csv(title: str, sheets) -> bytes:
    output = io.StringIO()
    output.write(f"{title}\n\n")
    for sheet_name, df in sheets:
        output.write(f"{sheet_name}\n")
        df.to_csv(output, index=False)
        output.write("\n")
    return output.getvalue().encode('utf-8-sig')


def safe_text(text) -> str:
    """Core PDF fonts are latin-1 only; anything else becomes '?'."""
    if text is None:
        return ''
    return str(text).encode('latin-1', 'replace').decode('latin-1')


def _pdf(title: str, sheets) -> bytes:
    pdf = FPDF(orientation='P', unit='mm', format='A4')
    pdf.set_auto_page_break(auto=True, margin=12)
    pdf.add_page()

    pdf.set_fill_color(18, 45, 105)
    pdf.set_text_color(255, 255, 255)
    pdf.set_font('Helvetica', 'B', 12)
    pdf.cell(0, 9, safe_text(title), border=0, new_x='LMARGIN', new_y='NEXT', align='C', fill=True)
    pdf.ln(3)

    available_width = pdf.w - pdf.l_margin - pdf.r_margin
    for sheet_name, df in sheets:
        pdf.set_text_color(35, 56, 114)
        pdf.set_font('Helvetica', 'B', 10)
        pdf.cell(0, 7, safe_text(sheet_name), new_x='LMARGIN', new_y='NEXT')
        if df.empty:
            pdf.set_text_color(200, 0, 0)
            pdf.set_font('Helvetica', '', 9)
            pdf.cell(0, 6, 'No data available.', new_x='LMARGIN', new_y='NEXT', align='C')
            pdf.ln(2)
            continue

        width = available_width / len(df.columns)
        pdf.set_fill_color(245, 247, 250)
        pdf.set_font('Helvetica', 'B', 8)
        for col in df.columns:
            pdf.cell(width, 6, safe_text(str(col).replace('_', ' ')), border=1, align='C', fill=True)
        pdf.ln(6)

        pdf.set_text_color(0, 0, 0)
        pdf.set_font('Helvetica', '', 8)
        for _, row in df.iterrows():
            for item in row:
                pdf.cell(width, 6, safe_text(item)[:40], border=1, align='C')
            pdf.ln(6)
        pdf.ln(4)

    pdf.set_font('Helvetica', '', 8)
    generated_at = datetime.now().strftime('%B %d, %Y %I:%M %p')
    pdf.cell(0, 5, safe_text(f"Date Generated: {generated_at}"), new_x='LMARGIN', new_y='NEXT', align='R')
    return bytes(pdf.output())


_WRITERS = {'excel': _excel, 'csv': _csv, 'pdf': _pdf}


def render(fmt: str, title: str, sheets, filename: str) -> Tuple[bytes, str, str]:
    """Return (payload, mimetype, download name). Raises ValueError on an unknown format."""
    if fmt not in _WRITERS:
        raise ValueError(f"Invalid format: {fmt}")
    mimetype, ext = MIMETYPES[fmt]
    return _WRITERS[fmt](title, sheets), mimetype, f"{filename}.{ext}"


def export_monthly_report(report: dict, fmt: str) -> Tuple[bytes, str, str]:
    summary, wallets = monthly_report_frames(report)
    title = f"{APP_TITLE} - Monthly Report {report.get('monthLabel', '')}"
    return render(fmt, title, [('Summary', summary), ('Driver Wallets', wallets)],
                  f"monthly_report_{report.get('id', 'report')}")


def export_user_report(report: dict, fmt: str) -> Tuple[bytes, str, str]:
    user = report.get('user', {})
    summary = report.get('summary', {})
    totals = pd.DataFrame([
        ('Orders', summary.get('count', 0)),
        (f"Total Revenue ({CURRENCY})", to_currency(summary.get('totalRevenue', 0))),
        (f"Total Delivery ({CURRENCY})", to_currency(summary.get('totalDelivery', 0))),
        (f"App Commission ({CURRENCY})", to_currency(summary.get('appCommission', 0))),
        (f"Driver Earnings ({CURRENCY})", to_currency(summary.get('driverEarnings', 0))),
    ], columns=['Metric', 'Value'])
    title = f"{APP_TITLE} - {user.get('name', '')} ({report.get('dateLabel', '')})"
    return render(fmt, title, [('Summary', totals), ('Orders', user_report_frame(report))],
                  f"{user.get('role') or 'user'}_report_{user.get('id', '')}")
