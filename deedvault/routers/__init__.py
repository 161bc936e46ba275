# API Routers - DeedVault

from deedvault.routers import documents, health, uploads, verifications

__all__ = ["documents", "health", "uploads", "verifications"]
