from consultas.adapters.base import ChallengeHints, SearchField, SiteAdapter
from consultas.models import SearchMode

URL_PIURA = "http://www.munipiura.gob.pe/consulta-de-multas-de-transito#buscar-por-placa"

# El formulario abre los resultados en una ventana nueva (transitoxplamot.asp).
# El reCAPTCHA solo aparece a veces.
PIURA = SiteAdapter(
    target_id="piura",
    name="Municipalidad de Piura - Multas de tránsito",
    category="infraction",
    search_url=URL_PIURA,
    search_modes={
        SearchMode.PLATE: SearchField(
            input_selectors=("input[name='PlaMot']", "input[name='PLACA']", "form input[type='text']"),
        ),
    },
    form_selectors=("input[name='PlaMot']", "input[name='PLACA']"),
    submit_selectors=(
        "input[type='submit']",
        "button[type='submit']",
        "button:has-text('Buscar')",
    ),
    challenge=ChallengeHints(
        kind="recaptcha",
        optional=True,
        response_fields=("g-recaptcha-response",),
    ),
    result_view="popup",
    result_selectors=("table",),
    table_selectors=("table",),
    no_data_markers=("no cuenta con multas",),
    field_map={
        "number": ("numero", "nro", "n multa"),
        "date": ("fecha",),
        "description": ("infraccion", "descripcion"),
        "amount": ("monto", "importe"),
        "status": ("estado",),
    },
)
