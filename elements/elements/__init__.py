"""
Element implementations: Space, UplinkProxy and AgentSession.
"""
