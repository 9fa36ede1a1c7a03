"""Story Agents — conversational character agents for investigation stories.

Each agent plays one story character against a language-model generator,
and may hand over only the evidence it holds and grant access only to the
locations it knows.
"""
