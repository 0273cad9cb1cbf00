from datetime import timedelta
from typing import List

from app.models import Order, OrderStatus, Shipment, TrackingEvent, parse_ts

SHIPPED_STATUSES = {OrderStatus.SHIPPED, OrderStatus.DELIVERED}


def _synthetic_timeline(order: Order) -> List[TrackingEvent]:
    """
    Status-derived milestones for orders that carry no tracking events.
    """
    placed = parse_ts(order.order_date)
    if placed is None:
        return []

    def _ts(days: int) -> str:
        return (placed + timedelta(days=days)).isoformat().replace("+00:00", "Z")

    timeline = [
        TrackingEvent(ts=_ts(0), status="confirmed", location="Order Processing Center",
                      description="Order placed and confirmed"),
        TrackingEvent(ts=_ts(1), status="processing", location="Fulfillment Center",
                      description="Order processed and packaged"),
    ]
    if order.status in SHIPPED_STATUSES:
        timeline.append(TrackingEvent(ts=_ts(2), status="shipped", location="Distribution Center",
                                      description="Package shipped"))
        timeline.append(TrackingEvent(ts=_ts(3), status="in_transit", location="Local Facility",
                                      description="Package in transit to destination"))
    if order.status == OrderStatus.DELIVERED:
        timeline.append(TrackingEvent(ts=_ts(4), status="delivered", location="Your Address",
                                      description="Package delivered successfully"))
    return timeline


def get_tracking(order: Order) -> Shipment:
    timeline = list(order.tracking) or _synthetic_timeline(order)
    return Shipment(
        tracking_id=order.tracking_number or order.order_id,
        carrier="standard",
        current_status=order.status.value,
        current_location=order.current_location,
        estimated_delivery=order.estimated_delivery,
        timeline=timeline,
    )


def format_tracking(order: Order, shipment: Shipment) -> str:
    lines = [f"{order.item_names} (order {order.order_id})"]
    if order.status == OrderStatus.DELIVERED:
        lines.append("Status: Delivered")
        lines.append(f"Location: {shipment.current_location or 'Delivered to your address'}")
    else:
        lines.append(f"Status: {order.status.value.replace('_', ' ').capitalize()}")
        lines.append(f"Location: {shipment.current_location or 'In transit'}")
        eta = parse_ts(shipment.estimated_delivery)
        lines.append(f"Estimated delivery: {eta.date().isoformat() if eta else 'TBD'}")

    if shipment.timeline:
        lines.append("Tracking history:")
        for ev in shipment.timeline:
            dt = parse_ts(ev.ts)
            day = dt.date().isoformat() if dt else ev.ts
            lines.append(f"- {day} - {ev.location or 'Unknown'}: {ev.description or ev.status}")

    if order.tracking_number:
        lines.append(f"Tracking number: {order.tracking_number}")
    return "\n".join(lines)
