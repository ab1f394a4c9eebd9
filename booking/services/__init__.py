"""
Booking services module.

Services:
- entity_resolver: client / psychologist / package lookup
- availability_service: advisory slot check and slot consumption
- payment_service: manual payment ledger writes
- meet_link_service: Google Calendar event + Meet link (best effort)
- session_writer: session insert, the double-booking guard
- package_service: client package consumption
- notification_service: post-booking email / WhatsApp / reminder check
- reminder_service: WhatsApp session reminders
"""
