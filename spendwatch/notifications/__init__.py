"""Alert rendering and email delivery."""
