"""Core primitives shared by services: time source and event queues."""
