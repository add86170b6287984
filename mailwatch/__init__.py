"""
mail-watch: per-account new-mail notifications for IMAP and POP3 mailboxes.
"""
__version__ = '0.1.0'
