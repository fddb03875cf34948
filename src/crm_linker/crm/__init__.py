"""CRM entities touched by the linking job -- companies, contacts, and deals."""
