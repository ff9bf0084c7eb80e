import re
import unicodedata

# {{nome}} ou {nome}, resolvidos em uma única passada
PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}|\{(\w+)\}")


def replace_variables(text, variables: dict):
    """
    Substitui {{chave}} e {chave} pelo valor correspondente no escopo.
    Placeholders sem variável correspondente ficam intactos (nunca lança erro).
    """
    if not text:
        return text

    def _sub(match):
        key = match.group(1) or match.group(2)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER_RE.sub(_sub, str(text))


def normalize_text(text: str) -> str:
    """
    Normaliza texto para comparação (opções de menu):
    - Transforma em minúsculo
    - Remove acentos
    - Remove espaços extras
    """
    if not text: return ""
    text = str(text).lower()
    # Decompor caracteres com acento e remover diacríticos
    text = "".join(c for c in unicodedata.normalize('NFKD', text) if not unicodedata.combining(c))
    return ' '.join(text.split())
