"""Core application components.

This module provides the foundational components for the CRM sync API:
- Database connection management via Prisma
- Application settings and configuration
- Credential encryption for stored CRM passwords
"""
