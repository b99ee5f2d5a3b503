"""PDF invoices for settled orders."""
import io
import logging
from decimal import Decimal

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from errors import InternalError
from models import Order, OrderStatus, User

logger = logging.getLogger(__name__)

PRIMARY = colors.HexColor("#2C3E50")
ACCENT = colors.HexColor("#27AE60")
MUTED = colors.HexColor("#7F8C8D")
RULE = colors.HexColor("#ECF0F1")

MARGIN = 50
ROW_HEIGHT = 24


def invoice_filename(order_id: int) -> str:
    return f"invoice-{order_id}.pdf"


def _money(value) -> str:
    return f"${Decimal(value):.2f}"


def generate_invoice(order: Order, user: User) -> bytes:
    """
    Render an A4 invoice for an order.

    Args:
        order: Order with its items and their products loaded
        user: Buyer the invoice is addressed to

    Returns:
        PDF document bytes

    Raises:
        InternalError: If the document cannot be rendered
    """
    try:
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4)
        pdf.setTitle(f"Invoice #{order.id}")
        pdf.setAuthor("Storefront")
        width, height = A4
        right = width - MARGIN
        top = height - MARGIN

        pdf.setFillColor(PRIMARY)
        pdf.setFont("Helvetica-Bold", 24)
        pdf.drawString(MARGIN, top - 20, "Storefront")
        pdf.drawRightString(right, top - 20, f"INVOICE #{order.id}")

        paid = order.status == OrderStatus.COMPLETED
        pdf.setFillColor(ACCENT if paid else colors.HexColor("#E74C3C"))
        pdf.setFont("Helvetica-Bold", 12)
        pdf.drawRightString(right, top - 40, "PAID" if paid else "PENDING")

        pdf.setFillColor(MUTED)
        pdf.setFont("Helvetica", 10)
        pdf.drawRightString(right, top - 56, f"Date: {order.created_at:%Y-%m-%d}")

        pdf.setStrokeColor(RULE)
        pdf.setLineWidth(2)
        pdf.line(MARGIN, top - 80, right, top - 80)

        pdf.setFillColor(PRIMARY)
        pdf.setFont("Helvetica-Bold", 12)
        pdf.drawString(MARGIN, top - 105, "CUSTOMER")
        pdf.setFillColor(MUTED)
        pdf.setFont("Helvetica", 10)
        pdf.drawString(MARGIN, top - 122, f"Name: {user.name}")
        pdf.drawString(MARGIN, top - 136, f"Customer ID: #{user.id}")
        pdf.drawString(MARGIN, top - 150, f"Email: {user.email}")

        # Item table
        y = top - 190
        pdf.setFillColor(RULE)
        pdf.rect(MARGIN, y - 8, right - MARGIN, ROW_HEIGHT, stroke=0, fill=1)
        pdf.setFillColor(PRIMARY)
        pdf.setFont("Helvetica-Bold", 10)
        for x, label in ((MARGIN + 10, "#"), (MARGIN + 40, "Product"), (300, "Qty"),
                         (370, "Unit price"), (470, "Total")):
            pdf.drawString(x, y, label)

        pdf.setFont("Helvetica", 10)
        pdf.setFillColor(MUTED)
        pdf.setLineWidth(0.5)
        for index, item in enumerate(order.items, start=1):
            y -= ROW_HEIGHT
            if y < MARGIN + 60:
                pdf.showPage()
                pdf.setFont("Helvetica", 10)
                pdf.setFillColor(MUTED)
                y = top
            name = item.product.name if item.product is not None else f"Product #{item.product_id}"
            pdf.drawString(MARGIN + 10, y, str(index))
            pdf.drawString(MARGIN + 40, y, name[:40])
            pdf.drawString(300, y, str(item.quantity))
            pdf.drawString(370, y, _money(item.unit_price))
            pdf.drawString(470, y, _money(Decimal(item.unit_price) * item.quantity))
            pdf.line(MARGIN, y - 8, right, y - 8)

        y -= 2 * ROW_HEIGHT
        pdf.setFillColor(PRIMARY)
        pdf.setFont("Helvetica-Bold", 14)
        pdf.drawRightString(right, y, f"TOTAL: {_money(order.total)}")

        pdf.setFillColor(MUTED)
        pdf.setFont("Helvetica", 9)
        pdf.drawCentredString(width / 2, MARGIN, "Thank you for your purchase.")

        pdf.showPage()
        pdf.save()
        return buffer.getvalue()
    except Exception as e:
        logger.error("Invoice rendering failed", extra={"order_id": order.id, "error": str(e)})
        raise InternalError("Failed to generate invoice", details={"order_id": order.id}) from e
