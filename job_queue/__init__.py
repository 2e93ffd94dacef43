"""
Print Queue — Decouples order creation from ticket printing.

- The payment handler PUBLISHES a print job after the order commits
- PrintJobConsumer CONSUMES jobs, prints the ticket and marks the order printed
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
