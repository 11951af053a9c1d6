"""Budget policies and their evaluation against current spend."""
