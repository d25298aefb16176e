"""
Agent — Pipeline de respuesta de los agentes de chat embebibles.

Para cada turno del widget:
- Valida el origen de la request contra la allow-list del agente
- Detecta email/teléfono del usuario y registra el lead (en segundo plano)
- Recupera el conocimiento relevante del agente
- Arma el system prompt (agente + persona + conocimiento)
- Reenvía la respuesta del modelo como stream
"""
