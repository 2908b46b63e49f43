"""Client module - Storage API client, transfer events and queues."""
