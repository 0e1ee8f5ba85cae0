class AppState:
    """Process-wide CLI state, populated by the main callback before any command runs."""

    def __init__(self):
        self.verbose_mode: bool = False


# handle_exceptions reads this to decide whether to print full tracebacks.
APP_STATE = AppState()
