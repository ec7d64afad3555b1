"""Terminal-resident automation agent driving a tmux exec pane."""

__version__ = "0.3.0"
