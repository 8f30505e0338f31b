from __future__ import annotations

from stock_hub.automation.parsers import (
    RowData, invoice_from_row, item_from_row, lines_from_rows, order_from_row, parse_table_rows,
)
from stock_hub.automation.portals import customer_connect, routestar_invoices, routestar_items
from stock_hub.services.ingestion import validate_record

LISTING = """
<div class="ht_master"><table class="htCore"><tbody>
  <tr>
    <td></td><td><a href="/web/invoice/1001/">1001</a></td><td>10/01/2026</td><td></td><td></td><td></td>
    <td>Corner   Store</td><td>Sale</td><td></td><td class="htInvalid">Void</td><td></td><td></td><td>$1,240.50</td>
  </tr>
  <tr>
    <td></td><td>Total</td><td></td><td></td><td></td><td></td><td></td><td></td><td></td><td></td><td></td><td></td>
    <td>$1,240.50</td>
  </tr>
</tbody></table></div>
"""


def _portal(factory=routestar_invoices):
    portal = factory()
    portal.base_url = "https://portal.test"
    return portal


def test_parse_table_rows_reads_cells_links_and_classes():
    rows = parse_table_rows(LISTING, "div.ht_master table.htCore tbody tr")

    assert len(rows) == 2
    assert rows[0].cells[6] == "Corner Store"
    assert rows[0].link(1) == "/web/invoice/1001/"
    assert rows[0].classes[9] == "htInvalid"
    assert rows[0].cell(40) == ""


def test_invoice_rows_skip_footer_and_flag_invalid_status():
    portal = _portal()
    rows = parse_table_rows(LISTING, portal.row_selector)

    records = [invoice_from_row(r, portal, "closed") for r in rows]

    assert records[1] is None
    rec = records[0]
    assert (rec["invoice_number"], rec["status"], rec["invoice_type"]) == ("1001", "Invalid", "closed")
    assert rec["detail_url"] == "https://portal.test/web/invoice/1001/"
    assert validate_record(rec).total == 1240.50


def test_item_rows():
    portal = _portal(routestar_items)
    cells = ["Grains", "Wheat", "25lb bag", "$2.00", "$4.00", "", "", "12", "", "", "", "Dry goods"]
    row = RowData(cells=cells, links=[None] * len(cells), classes=[""] * len(cells))

    rec = item_from_row(row, portal)

    assert rec["item_name"] == "Wheat"
    assert rec["category"] == "Dry goods"
    item = validate_record(rec)
    assert (item.qty_on_hand, item.sales_price) == (12, 4)


def test_order_text_blocks():
    portal = _portal(customer_connect)
    row = RowData(
        links=["/index.php?route=account/order/info&order_id=77"],
        text="Order ID: #77 Status: Complete Date Added: 10/01/2026 Customer: Mill Co Products: 3 Total: $200.00",
    )

    rec = order_from_row(row, portal)

    assert rec["order_number"] == "77"
    assert rec["status"] == "Complete"
    assert rec["vendor_name"] == "Mill Co"
    assert rec["total"] == "$200.00"
    assert rec["detail_url"].endswith("order_id=77")
    assert order_from_row(RowData(text="No orders yet"), portal) is None


def test_detail_lines_skip_blank_and_totals():
    portal = _portal()
    rows = [
        RowData(cells=["Wheat", "flour", "5", "$4.00", "$20.00"]),
        RowData(cells=["", "", "", "", ""]),
        RowData(cells=["Note only", "", "", "", ""]),
        RowData(cells=["Subtotal", "", "5", "", "$20.00"]),
    ]

    assert lines_from_rows(rows, portal) == [
        {"name": "Wheat", "sku": None, "quantity": "5", "rate": "$4.00", "amount": "$20.00"},
    ]


def test_order_detail_lines_use_order_columns():
    portal = _portal(customer_connect)
    rows = [RowData(cells=["Wheat", "WHT-1", "100", "$2.00", "$200.00"])]

    assert lines_from_rows(rows, portal) == [
        {"name": "Wheat", "sku": "WHT-1", "quantity": "100", "unit_price": "$2.00", "line_total": "$200.00"},
    ]
