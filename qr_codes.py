"""Table QR codes: target urls, PNG/data-url images and a printable sheet.

Command line usage (needs a database with the branch in it):

    python qr_codes.py --branch CAS --out qr-codes --sheet
"""
import os
import io
import base64
import argparse
from html import escape
from datetime import datetime
from urllib.parse import urlencode
import qrcode


def table_url(frontend_url, branch_code, table_number):
    query = urlencode({'table': table_number, 'branch': branch_code})
    return f"{frontend_url.rstrip('/')}/menu?{query}"


def ensure_table_url(table, frontend_url):
    """Stores the QR target on the table the first time it is asked for."""
    if not table.qr_code_url:
        table.qr_code_url = table_url(frontend_url, table.branch.code, table.table_number)
    return table.qr_code_url


def make_png(data, box_size=10, border=4):
    qr = qrcode.QRCode(version=None, box_size=box_size, border=border,
                       error_correction=qrcode.constants.ERROR_CORRECT_M)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color='black', back_color='white')
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return buffer.getvalue()


def make_data_url(data, box_size=10, border=4):
    encoded = base64.b64encode(make_png(data, box_size, border)).decode('ascii')
    return f'data:image/png;base64,{encoded}'


SHEET_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Table QR Codes - {branch_name}</title>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 20px; }}
        .header {{ text-align: center; margin-bottom: 30px; }}
        .qr-grid {{ display: grid; grid-template-columns: repeat(auto-fit, minmax(200px, 1fr)); gap: 20px; }}
        .qr-card {{ border: 1px solid #ddd; padding: 20px; text-align: center; }}
        .qr-card img {{ max-width: 100%; height: auto; }}
        .table-info {{ font-weight: bold; margin-bottom: 5px; }}
        .table-description {{ font-size: 0.9em; color: #666; }}
        @media print {{
            .qr-grid {{ grid-template-columns: repeat(4, 1fr); }}
            .qr-card {{ break-inside: avoid; }}
        }}
    </style>
</head>
<body>
    <div class="header">
        <h1>{branch_name}</h1>
        <h2>Table QR Codes - {branch_code}</h2>
        <p>Generated on {generated}</p>
    </div>
    <div class="qr-grid">
{cards}
    </div>
</body>
</html>
"""

CARD_TEMPLATE = """        <div class="qr-card">
            <img src="{src}" alt="QR code for table {number}">
            <div class="table-info">Table {number}</div>
            <div class="table-description">{description}</div>
        </div>"""


def render_sheet(branch, entries):
    """entries: dicts with table_number, description and src (file name or data url)."""
    cards = '\n'.join(CARD_TEMPLATE.format(src=escape(e['src']), number=escape(str(e['table_number'])),
                                           description=escape(e.get('description') or ''))
                      for e in entries)
    return SHEET_TEMPLATE.format(branch_name=escape(branch.name), branch_code=escape(branch.code),
                                 generated=datetime.utcnow().strftime('%Y-%m-%d'), cards=cards)


def table_sort_key(table):
    number = table.table_number
    digits = ''.join(c for c in number if c.isdigit())
    return (int(digits) if digits else 0, number)


def branch_sheet(branch, tables, frontend_url):
    entries = []
    for table in sorted(tables, key=table_sort_key):
        url = ensure_table_url(table, frontend_url)
        entries.append({'table_number': table.table_number, 'description': table.description,
                        'src': make_data_url(url)})
    return render_sheet(branch, entries)


def write_branch_codes(branch, tables, frontend_url, out_dir, sheet=False):
    os.makedirs(out_dir, exist_ok=True)
    entries = []
    written = []
    for table in sorted(tables, key=table_sort_key):
        url = ensure_table_url(table, frontend_url)
        filename = f'table-{table.table_number}-qr.png'
        with open(os.path.join(out_dir, filename), 'wb') as f:
            f.write(make_png(url))
        written.append(filename)
        entries.append({'table_number': table.table_number, 'description': table.description,
                        'src': filename})
    if sheet:
        with open(os.path.join(out_dir, 'qr-codes-sheet.html'), 'w', encoding='utf-8') as f:
            f.write(render_sheet(branch, entries))
        written.append('qr-codes-sheet.html')
    return written


def main(argv=None):
    parser = argparse.ArgumentParser(description='Generate table QR codes for a branch')
    parser.add_argument('--branch', default='CAS', help='branch code')
    parser.add_argument('--out', default='qr-codes', help='output directory')
    parser.add_argument('--sheet', action='store_true', help='also write a printable HTML sheet')
    parser.add_argument('--frontend-url', help='customer app url (defaults to FRONTEND_URL)')
    args = parser.parse_args(argv)

    from app import app
    from models import db, Branch, DiningTable

    with app.app_context():
        branch = Branch.query.filter_by(code=args.branch).first()
        if branch is None:
            print(f'Branch {args.branch} not found')
            return 1
        tables = DiningTable.query.filter_by(branch_id=branch.id).all()
        if not tables:
            print(f'Branch {args.branch} has no tables')
            return 1
        frontend_url = args.frontend_url or app.config['FRONTEND_URL']
        print(f'Generating QR codes for {len(tables)} tables of {branch.name}...')
        written = write_branch_codes(branch, tables, frontend_url, args.out, sheet=args.sheet)
        db.session.commit()
        for filename in written:
            print(f'Generated {filename}')
        print(f'QR codes saved to {os.path.abspath(args.out)}')
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
