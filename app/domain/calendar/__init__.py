"""Calendar domain - Google Calendar availability and appointment booking"""
