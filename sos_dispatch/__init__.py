"""SOS Dispatch: emergency provider matching and offer commitment."""
