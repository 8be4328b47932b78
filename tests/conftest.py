import pytest


class RecordingView:
    """ChatView that records every call, for assertions."""

    def __init__(self):
        self.events = []
        self.states = []
        self.messages = []
        self.thoughts = []
        self.answers = []
        self.scrolls = 0

    def set_chat_state(self, state):
        self.states.append(state)

    def add_message(self, kind, html):
        self.messages.append((kind, html))
        self.events.append(("message", kind, html))

    def render_thought(self, html, *, visible, expanded):
        self.thoughts.append((html, visible, expanded))
        self.events.append(("thought", html))

    def render_answer(self, html):
        self.answers.append(html)
        self.events.append(("answer", html))

    def scroll_to_end(self):
        self.scrolls += 1

    def kinds(self):
        return [kind for kind, _ in self.messages]


@pytest.fixture
def view():
    return RecordingView()
