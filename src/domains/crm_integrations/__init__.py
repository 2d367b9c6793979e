"""CRM integration engine: settings, CRM logins, invoice push and PDF lookup."""
