"""Built-in keyword table for transactions no user rule matched.

Categories are checked in order and keywords are lowercase substrings of the
transaction text. Supermarket chains come before general shopping, so
"NETTO BUTIK" lands in Groceries and not in Shopping.
"""

DEFAULT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Groceries", (
        "netto", "rema 1000", "føtex", "fotex", "bilka", "lidl", "aldi", "kvickly",
        "super brugsen", "superbrugsen", "dagli'brugsen", "meny", "irma", "fakta",
        "coop", "løvbjerg", "spar ", "supermarked",
    )),
    ("Internal Transfer", (
        "overførsel", "overforsel", "fra forsikringer", "til forsikringer",
        "fra løn", "til løn", "transfer",
    )),
    ("MobilePay", ("mobilepay",)),
    ("Insurance", ("forsikring", "insurance", "tryg", "alka", "codan", "topdanmark")),
    ("Rent", (
        "husleje", "boligselskab", "andelsbolig", "lejlighed", "ejendom",
    )),
    ("Utilities", (
        "elektricitet", "strøm", "fjernvarme", "varmeværk", "vandværk", "energi",
        "ørsted", "andel energi",
    )),
    ("Bills", (
        "telefon", "regning", "internet", "tdc", "telenor", "telia", "yousee",
        "stofa", "3dk",
    )),
    ("Convenience Stores", ("7-eleven", "7eleven", "kiosk", "convenience")),
    ("Gas", ("circle k", "shell", "q8", "ok benzin", "ingo", "benzin", "esso")),
    ("Parking", ("parkering", "parking", "p-hus", "easypark", "parkman")),
    ("ATM", ("hævning", "pengeautomat", "kontanthævning", "atm ")),
    ("Transport", (
        "dsb", "rejsekort", "metro", "movia", "s-tog", "letbane", "taxi", "uber",
        "flixbus",
    )),
    ("Dining", (
        "restaurant", "cafe", "café", "pizza", "burger", "mcdonalds", "mcdonald's",
        "kfc", "sushi", "takeaway", "just eat", "wolt",
    )),
    ("Entertainment", (
        "spotify", "netflix", "disney", "hbo", "viaplay", "tv 2 play", "cinema",
        "biograf", "nordisk film", "streaming",
    )),
    ("Travel", (
        "hotel", "airbnb", "booking.com", "lufthavn", "airport", "sas ", "norwegian",
        "ryanair", "rejsebureau", "ferie",
    )),
    ("Fitness", ("fitness", "træning", "sats", "fitness world", "wellness")),
    ("Beauty", ("frisør", "frisor", "skønhed", "beauty", "kosmetik", "matas", "massage")),
    ("Healthcare", (
        "apotek", "læge", "tandlæge", "hospital", "sundhed", "medicin", "fysioterapi",
    )),
    ("Pet Care", ("dyrlæge", "kæledyr", "dyrehandel", "maxi zoo")),
    ("Clothing", (
        "h&m", "zara", "bestseller", "jack & jones", "vero moda", "tøj", "clothing",
        "fashion", "skoringen", "deichmann",
    )),
    ("Home Improvement", (
        "bauhaus", "silvan", "jem & fix", "harald nyborg", "stark", "ikea",
        "byggemarked", "værktøj",
    )),
    ("Shopping", (
        "magasin", "illum", "butik", "shopping", "webshop", "elgiganten", "power ",
        "zalando", "amazon",
    )),
    ("Education", (
        "universitet", "uddannelse", "kursus", "skole", "studium", "pensum",
    )),
    ("Waste", ("affald", "renovation", "skrald")),
    ("Gifts", ("donation", "velgørenhed", "indsamling", "charity")),
    ("Investment", ("investering", "aktier", "pension", "opsparing", "nordnet", "saxo")),
    ("Loans", ("afdrag", "ydelse lån", "kreditkort", "gæld")),
    ("Fees", ("gebyr", "afgift", "omkostning")),
)
