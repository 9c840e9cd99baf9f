"""Uploader providers: backends that move volume data into a backup repository."""
