"""Fixed assistant texts shown in the chat widget."""

GREETING_MESSAGE = (
    "Hello! I'm the KASA AI Assistant. How can I help you today? "
    "You can ask me about signage permits, the application process, "
    "fees, or compliance requirements."
)

# Replaces the in-progress reply whenever an exchange fails.
FALLBACK_MESSAGE = "Sorry, I encountered an error. Please try again."
