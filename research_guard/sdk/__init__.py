"""
Clients for the external services Research Guard depends on:
the credit ledger, the document search index and the chat model.
"""
