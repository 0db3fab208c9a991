"""
Integration test modules

Tests for external system integrations including:
- Payment gateways
- E-signature providers
- ERP/Accounting systems
- CRM/CPQ systems
- Workflow orchestration
"""