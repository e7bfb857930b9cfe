"""
Provider adapters (Vonage voice, Twilio messaging, mock) and webhook ingestion.
"""
