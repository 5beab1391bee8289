"""
Conversation Engine

Multi-tenant conversational commerce over WhatsApp:
- Channel sessions per business (pairing, connection, delivery)
- Inbound message pipeline with an AI assistant
- Order creation from the assistant's structured replies
- Payment links and gateway webhook reconciliation
"""

__version__ = "0.1.0"
